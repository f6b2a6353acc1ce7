"""
SessionSupervisor — owns the transport connection and its event stream.

The supervisor:
  - Initializes the transport (one retry after clearing stale lock state,
    then a fatal error)
  - Runs the single dispatcher task that applies transport events to the
    Session state machine and hands user messages to the delivery pipeline
  - Recovers from disconnects: explicit re-initialization for reasons the
    transport cannot heal by itself, otherwise a grace period for the
    transport's own auto-reconnect
  - Shuts everything down in order: stop intake, let in-flight forwards
    finish (bounded), drain replies, close the transport

Flow:
  Transport.events() → SessionSupervisor._apply → Session.on_*
                                              └→ normalize → DeliveryPipeline.handle
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time

from chatrelay.core.config import SessionConfig
from chatrelay.core.metrics import metrics
from chatrelay.outbound.queue import OutboundQueue
from chatrelay.pipeline.delivery import DeliveryPipeline
from chatrelay.pipeline.models import Filtered
from chatrelay.pipeline.normalizer import normalize
from chatrelay.session.pairing import qr_terminal
from chatrelay.session.state import Session
from chatrelay.transport.base import Transport, TransportError
from chatrelay.transport.bridge import BRIDGE_CLOSED
from chatrelay.transport.events import TransportEvent, TransportEventKind

logger = logging.getLogger(__name__)

# Disconnect reasons the client does not recover from on its own
REINIT_REASONS = frozenset(
    {"LOGOUT", "UNPAIRED", "UNPAIRED_IDLE", "NAVIGATION", "CONFLICT", BRIDGE_CLOSED}
)

# Reasons that invalidate the stored credentials
RESET_REASONS = frozenset({"LOGOUT", "UNPAIRED"})


class SupervisorFatalError(RuntimeError):
    """The transport could not be initialized even after the retry."""


class SessionSupervisor:
    """Keeps one messaging session alive for the lifetime of the process."""

    def __init__(
        self,
        transport: Transport,
        session: Session,
        pipeline: DeliveryPipeline,
        outbound: OutboundQueue,
        config: SessionConfig | None = None,
    ) -> None:
        self._transport = transport
        self._session = session
        self._pipeline = pipeline
        self._outbound = outbound
        self._config = config or SessionConfig()

        self._dispatcher_task: asyncio.Task[None] | None = None
        self._recovery_task: asyncio.Task[None] | None = None
        self._awaiting_auto_reconnect = False
        self._pending_reset = False
        self._handlers: set[asyncio.Task] = set()
        self._accepting = False
        self._stopped = False
        self._reinit_count = 0

    # ─── Readiness ───────────────────────────────────────────────

    def is_ready(self) -> bool:
        """Single source of truth for "can we talk to WhatsApp right now"."""
        return self._session.is_ready()

    # ─── Lifecycle ───────────────────────────────────────────────

    async def start(self) -> None:
        """Initialize the transport and begin dispatching its events.

        Raises:
            SupervisorFatalError: initialization failed twice.
        """
        logger.info("Initializing WhatsApp...")
        await self._initialize()
        self._accepting = True
        self._dispatcher_task = asyncio.create_task(
            self._dispatch_loop(), name="session-dispatcher"
        )

    async def _initialize(self) -> None:
        try:
            await self._transport.connect()
            return
        except (TransportError, OSError) as e:
            logger.error("Failed to initialize WhatsApp: %s", e)

        await self._close_transport()
        removed = await self._transport.clear_stale_state()
        logger.info(
            "Retrying initialization in %.1fs (cleared %d stale lock file(s))",
            self._config.init_retry_delay,
            len(removed),
        )
        await asyncio.sleep(self._config.init_retry_delay)

        try:
            await self._transport.connect()
        except (TransportError, OSError) as e:
            await self._close_transport()
            raise SupervisorFatalError(
                f"WhatsApp initialization failed after retry: {e}"
            ) from e

    async def shutdown(self, grace: float = 10.0) -> None:
        """Stop intake, finish or abandon in-flight work, release the transport."""
        logger.info("Shutting down session supervisor...")
        started = time.monotonic()
        self._stopped = True
        self._accepting = False

        try:
            if self._recovery_task is not None:
                self._recovery_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._recovery_task

            if self._handlers:
                _, pending = await asyncio.wait(set(self._handlers), timeout=grace)
                if pending:
                    logger.warning(
                        "Abandoning %d in-flight forward(s) after %.1fs",
                        len(pending),
                        grace,
                    )
                    for task in pending:
                        task.cancel()
                    await asyncio.gather(*pending, return_exceptions=True)

            remaining = max(0.0, grace - (time.monotonic() - started))
            await self._outbound.drain(remaining)
            await self._outbound.stop()

            if self._dispatcher_task is not None:
                self._dispatcher_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._dispatcher_task
                self._dispatcher_task = None
        finally:
            await self._close_transport()
            logger.info("Session supervisor stopped")

    async def _close_transport(self) -> None:
        try:
            await self._transport.close()
        except Exception as e:
            logger.warning("Error closing transport: %s", e)

    # ─── Event dispatch ──────────────────────────────────────────

    async def _dispatch_loop(self) -> None:
        async for event in self._transport.events():
            try:
                self._apply(event)
            except Exception as e:
                logger.error(
                    "Error handling %s event: %s", event.kind.value, e, exc_info=True
                )

    def _apply(self, event: TransportEvent) -> None:
        kind = event.kind
        payload = event.payload

        if kind is TransportEventKind.MESSAGE:
            self._accept_message(payload)
        elif kind is TransportEventKind.PAIRING_CODE:
            code = str(payload.get("code", ""))
            self._session.on_pairing_code_issued(code)
            if self._config.terminal_qr and code and self._session.current_code() == code:
                logger.info(
                    "Scan this QR code with WhatsApp:\n%s", qr_terminal(code)
                )
        elif kind is TransportEventKind.AUTHENTICATED:
            self._session.on_authenticated()
        elif kind is TransportEventKind.AUTH_FAILURE:
            reason = str(payload.get("message", ""))
            self._session.on_auth_failure(reason)
            self._schedule_recovery("auth_failure", reinit=True, reset=True)
        elif kind is TransportEventKind.READY:
            self._session.on_ready(payload.get("wid"))
        elif kind is TransportEventKind.DISCONNECTED:
            reason = str(payload.get("reason", "unknown"))
            self._session.on_disconnected(reason)
            self._schedule_recovery(
                reason,
                reinit=reason in REINIT_REASONS,
                reset=reason in RESET_REASONS,
            )
        elif kind is TransportEventKind.LOADING:
            self._session.on_loading(
                int(payload.get("percent", 0)), str(payload.get("message", ""))
            )

    def _accept_message(self, payload: dict) -> None:
        if not self._accepting:
            logger.debug("Ignoring message received during shutdown")
            return

        verdict = normalize(payload, own_id=self._session.own_id)
        if isinstance(verdict, Filtered):
            return

        task = asyncio.create_task(
            self._pipeline.handle(verdict),
            name=f"forward-{verdict.provider_message_id or verdict.external_id}",
        )
        self._handlers.add(task)
        task.add_done_callback(self._on_handler_done)

    def _on_handler_done(self, task: asyncio.Task) -> None:
        self._handlers.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Error processing message: %s", exc, exc_info=exc)

    # ─── Recovery ────────────────────────────────────────────────

    def _schedule_recovery(self, reason: str, reinit: bool, reset: bool) -> None:
        if self._stopped:
            return
        # Picked up by the next re-init attempt, whichever task runs it
        if reset:
            self._pending_reset = True

        if self._recovery_task is not None and not self._recovery_task.done():
            if not (reinit and self._awaiting_auto_reconnect):
                logger.debug("Recovery already in progress, folding in %s", reason)
                return
            logger.info("Escalating recovery to re-initialization (%s)", reason)
            self._recovery_task.cancel()

        if reinit:
            coro = self._reinitialize(reason)
        else:
            coro = self._await_auto_reconnect(reason)
        self._recovery_task = asyncio.create_task(coro, name="session-recovery")

    async def _await_auto_reconnect(self, reason: str) -> None:
        grace = self._config.reconnect_grace
        logger.info(
            "Waiting %.1fs for the client to reconnect by itself (%s)", grace, reason
        )
        self._awaiting_auto_reconnect = True
        try:
            await asyncio.wait_for(self._session.wait_ready(), timeout=grace)
            logger.info("Client reconnected without intervention")
            return
        except asyncio.TimeoutError:
            pass
        finally:
            self._awaiting_auto_reconnect = False
        await self._reinitialize(reason)

    async def _reinitialize(self, reason: str) -> None:
        delay = self._config.reconnect_delay
        attempt = 0

        while not self._stopped:
            attempt += 1
            self._reinit_count += 1
            metrics.inc("relay.supervisor.reinit", labels={"reason": reason})
            logger.info(
                "Re-initializing WhatsApp (attempt %d, reason=%s)",
                attempt,
                reason,
                extra={"attempt": attempt, "reason": reason},
            )

            await self._close_transport()
            if self._pending_reset:
                self._pending_reset = False
                await self._transport.reset_session()

            try:
                await self._transport.connect()
                logger.info("WhatsApp re-initialized on attempt %d", attempt)
                return
            except (TransportError, OSError) as e:
                logger.warning("Re-initialization attempt %d failed: %s", attempt, e)
                if attempt == 1:
                    await self._transport.clear_stale_state()

            await asyncio.sleep(delay)
            delay = min(delay * 2, self._config.reconnect_max_delay)

    # ─── Status ──────────────────────────────────────────────────

    def status(self) -> dict:
        return {
            "state": self._session.state.value,
            "ready": self.is_ready(),
            "accepting": self._accepting,
            "in_flight": len(self._handlers),
            "reinit_count": self._reinit_count,
            "recovering": self._recovery_task is not None
            and not self._recovery_task.done(),
        }
