"""
Outbound Queue — ordered, per-recipient delivery through the transport.

Guarantees:
- Per recipient, messages reach the transport in submission order
  (one worker per recipient, one send in progress at a time).
- Recipients are independent: a slow or failing recipient never blocks
  another one's worker.
- Nothing is sent while the session is not ready; messages wait in the
  queue instead of being dropped.
- Bounded depth per recipient; on overflow the oldest waiting message is
  dropped and logged.
- Transient send failures are retried with exponential backoff; messages
  that still fail are logged and dropped.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque

from chatrelay.core.config import QueueConfig
from chatrelay.core.metrics import metrics
from chatrelay.pipeline.models import OutboundMessage
from chatrelay.session.state import Session
from chatrelay.transport.base import Transport, TransportSendError

logger = logging.getLogger(__name__)


class OutboundQueue:
    """Per-recipient FIFO queues drained by on-demand worker tasks."""

    def __init__(
        self,
        transport: Transport,
        session: Session,
        config: QueueConfig | None = None,
    ) -> None:
        self._transport = transport
        self._session = session
        self._config = config or QueueConfig()
        self._queues: dict[str, deque[OutboundMessage]] = {}
        self._workers: dict[str, asyncio.Task[None]] = {}
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False
        self._overflow_dropped = 0

    # ─── Submission ──────────────────────────────────────────────

    def enqueue(self, msg: OutboundMessage) -> None:
        """Queue a message for its recipient. Never blocks."""
        if self._closed:
            logger.warning(
                "Outbound queue closed, dropping message",
                extra={"recipient": msg.recipient_id},
            )
            metrics.inc("relay.outbound.dropped", labels={"reason": "closed"})
            return

        queue = self._queues.setdefault(msg.recipient_id, deque())
        if len(queue) >= self._config.max_depth:
            dropped = queue.popleft()
            self._overflow_dropped += 1
            metrics.inc("relay.outbound.overflow")
            logger.warning(
                "Outbound queue full for %s (depth=%d), dropped oldest message",
                msg.recipient_id,
                self._config.max_depth,
                extra={
                    "recipient": msg.recipient_id,
                    "message_id": dropped.correlation_id,
                },
            )

        queue.append(msg)
        self._idle.clear()
        self._update_gauge()

        if msg.recipient_id not in self._workers:
            self._workers[msg.recipient_id] = asyncio.create_task(
                self._run_worker(msg.recipient_id),
                name=f"outbound-{msg.recipient_id}",
            )

    # ─── Workers ─────────────────────────────────────────────────

    async def _run_worker(self, recipient: str) -> None:
        queue = self._queues[recipient]
        try:
            while queue:
                msg = queue.popleft()
                self._update_gauge()
                await self._deliver(msg)
        finally:
            self._workers.pop(recipient, None)
            if not queue and self._queues.get(recipient) is queue:
                del self._queues[recipient]
            self._update_gauge()
            if not self._workers and self.pending() == 0:
                self._idle.set()

    async def _deliver(self, msg: OutboundMessage) -> None:
        delay = self._config.send_backoff
        attempts = max(1, self._config.send_attempts)

        for attempt in range(1, attempts + 1):
            # Readiness can drop again between the event firing and this
            # task resuming, so re-check right before sending.
            while not self._session.is_ready():
                await self._session.wait_ready()

            try:
                await self._transport.send_message(msg.recipient_id, msg.body)
            except TransportSendError as e:
                error: Exception = e
                retryable = e.retryable
            except (TimeoutError, ConnectionError, OSError) as e:
                error = e
                retryable = True
            except Exception as e:
                metrics.inc("relay.outbound.dropped", labels={"reason": "send_error"})
                logger.error(
                    "Unexpected error sending to %s, dropping message: %s",
                    msg.recipient_id,
                    e,
                    exc_info=True,
                    extra={
                        "recipient": msg.recipient_id,
                        "message_id": msg.correlation_id,
                        "attempt": attempt,
                    },
                )
                return
            else:
                metrics.inc("relay.outbound.sent")
                logger.info(
                    "Replied to %s",
                    msg.recipient_id,
                    extra={
                        "recipient": msg.recipient_id,
                        "message_id": msg.correlation_id,
                        "attempt": attempt,
                    },
                )
                return

            if not retryable or attempt >= attempts:
                metrics.inc("relay.outbound.dropped", labels={"reason": "send_failed"})
                logger.error(
                    "Outbound send to %s failed permanently after %d attempt(s): %s",
                    msg.recipient_id,
                    attempt,
                    error,
                    extra={
                        "recipient": msg.recipient_id,
                        "message_id": msg.correlation_id,
                        "attempt": attempt,
                    },
                )
                return

            metrics.inc("relay.outbound.retried")
            logger.warning(
                "Outbound send to %s failed (attempt %d/%d), retrying in %.1fs: %s",
                msg.recipient_id,
                attempt,
                attempts,
                delay,
                error,
                extra={"recipient": msg.recipient_id, "attempt": attempt},
            )
            await asyncio.sleep(delay)
            delay *= 2

    # ─── Lifecycle / introspection ───────────────────────────────

    async def drain(self, timeout: float) -> bool:
        """Wait until every queue is empty. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(
                "Outbound queue not drained within %.1fs (%d pending)",
                timeout,
                self.pending(),
            )
            return False

    async def stop(self) -> None:
        """Refuse new messages and cancel all workers."""
        self._closed = True
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        lost = self.pending()
        if lost:
            logger.warning("Outbound queue stopped with %d undelivered message(s)", lost)

    def pending(self, recipient: str | None = None) -> int:
        """Messages waiting (not counting one currently being sent)."""
        if recipient is not None:
            return len(self._queues.get(recipient, ()))
        return sum(len(q) for q in self._queues.values())

    def stats(self) -> dict:
        return {
            "pending": self.pending(),
            "recipients": len(self._queues),
            "active_workers": len(self._workers),
            "overflow_dropped": self._overflow_dropped,
        }

    def _update_gauge(self) -> None:
        metrics.gauge_set("relay.outbound.pending", self.pending())
