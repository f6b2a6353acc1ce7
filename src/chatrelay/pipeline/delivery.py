"""
Delivery Pipeline — inbound message → backend → reply on the outbound queue.

Flow for a user message:
    handle(msg)
      → drop if its dedup key was seen recently (redelivery)
      → forward(msg): one backend POST per dedup key, concurrent callers
        share the in-flight result
      → reply (backend text, default text, or unavailable text) enqueued
        for msg.reply_to

Backend-initiated notifications enter through notify(): they are validated
and queued directly, without touching dedup state.

Backend failures are never retried inside a forward. A request that timed
out may still have been processed, and a second POST could double its side
effects; the user gets the unavailable text instead.
"""

from __future__ import annotations

import asyncio
import logging
import re

from chatrelay.core.config import BackendConfig, DedupConfig
from chatrelay.core.metrics import metrics
from chatrelay.outbound.queue import OutboundQueue
from chatrelay.pipeline.backend import BackendClient, BackendError
from chatrelay.pipeline.dedup import RecentKeys, content_key
from chatrelay.pipeline.models import InboundMessage, OutboundMessage
from chatrelay.session.state import Session

logger = logging.getLogger(__name__)

DEFAULT_CHAT_SUFFIX = "@c.us"

_NON_DIGITS = re.compile(r"\D")


class NotificationError(Exception):
    """A backend-initiated notification was rejected."""


class SessionNotReadyError(NotificationError):
    """The messaging session is not connected."""


class InvalidRecipientError(NotificationError):
    """The recipient identifier has no usable digits."""


def to_chat_id(recipient: str) -> str:
    """Turn a phone number (any formatting) into a provider chat id.

    "+233 55-511-1111" -> "233555111111@c.us". An explicit suffix is kept.
    """
    raw = str(recipient or "").strip()
    local, sep, suffix = raw.partition("@")
    digits = _NON_DIGITS.sub("", local)
    if not digits:
        raise InvalidRecipientError("Missing phone")
    return f"{digits}@{suffix}" if sep and suffix else f"{digits}{DEFAULT_CHAT_SUFFIX}"


class DeliveryPipeline:
    """Forwards inbound messages to the backend and queues the replies."""

    def __init__(
        self,
        backend: BackendClient,
        queue: OutboundQueue,
        session: Session,
        backend_config: BackendConfig | None = None,
        dedup_config: DedupConfig | None = None,
    ) -> None:
        self._backend = backend
        self._queue = queue
        self._session = session
        self._config = backend_config or BackendConfig()
        self._dedup_config = dedup_config or DedupConfig()
        self._recent = RecentKeys(
            capacity=self._dedup_config.capacity,
            ttl=self._dedup_config.ttl,
        )
        self._in_flight: dict[str, asyncio.Future[OutboundMessage]] = {}

    # ─── Inbound ─────────────────────────────────────────────────

    def dedup_key(self, msg: InboundMessage) -> tuple[str, float]:
        """(key, window): provider id when present, else a content hash."""
        if msg.provider_message_id:
            return msg.provider_message_id, self._dedup_config.ttl
        return (
            content_key(msg.external_id, msg.text),
            self._dedup_config.coalesce_window,
        )

    async def handle(self, msg: InboundMessage) -> OutboundMessage | None:
        """Process one inbound message end to end.

        Returns the queued reply, or None when the message was a duplicate.
        """
        key, window = self.dedup_key(msg)
        if not self._recent.check_and_add(key, window):
            metrics.inc("relay.inbound.duplicate")
            logger.info(
                "Duplicate inbound message dropped",
                extra={"external_id": msg.external_id, "message_id": key},
            )
            return None

        metrics.inc("relay.inbound.received")
        reply = await self.forward(msg)
        self._queue.enqueue(reply)
        return reply

    async def forward(self, msg: InboundMessage) -> OutboundMessage:
        """Get the reply for ``msg`` with at most one backend call in flight per key."""
        key, _ = self.dedup_key(msg)

        existing = self._in_flight.get(key)
        if existing is not None:
            metrics.inc("relay.inbound.coalesced")
            logger.debug(
                "Awaiting in-flight forward",
                extra={"external_id": msg.external_id, "message_id": key},
            )
            return await asyncio.shield(existing)

        future: asyncio.Future[OutboundMessage] = (
            asyncio.get_running_loop().create_future()
        )
        self._in_flight[key] = future
        try:
            body = await self._call_backend(msg)
        except BaseException:
            # Coalesced callers still owe the user an answer
            future.set_result(self._reply(msg, self._config.unavailable_reply))
            raise
        finally:
            self._in_flight.pop(key, None)

        reply = self._reply(msg, body)
        future.set_result(reply)
        return reply

    @staticmethod
    def _reply(msg: InboundMessage, body: str) -> OutboundMessage:
        return OutboundMessage(
            recipient_id=msg.reply_to,
            body=body,
            correlation_id=msg.provider_message_id,
        )

    async def _call_backend(self, msg: InboundMessage) -> str:
        payload = {
            "external_id": msg.external_id,
            "text": msg.text,
            "provider_message_id": msg.provider_message_id,
            "raw": msg.raw,
        }
        log_extra = {
            "external_id": msg.external_id,
            "message_id": msg.provider_message_id,
        }

        logger.info(
            "Message from %s: %r", msg.external_id, msg.text[:50], extra=log_extra
        )

        try:
            with metrics.timer("relay.backend.latency_ms") as watch:
                reply = await self._backend.post_message(payload)
        except BackendError as e:
            metrics.inc("relay.backend.requests", labels={"outcome": "error"})
            logger.error(
                "Backend API error: %s (status=%s, body=%s)",
                e,
                e.status_code,
                e.body,
                extra={
                    **log_extra,
                    "status_code": e.status_code,
                    "duration_ms": watch.elapsed_ms,
                },
            )
            return self._config.unavailable_reply

        duration_ms = watch.elapsed_ms
        metrics.inc("relay.backend.requests", labels={"outcome": "ok"})
        if reply is None:
            logger.info(
                "Backend returned no reply text, using default",
                extra={**log_extra, "duration_ms": duration_ms},
            )
            return self._config.default_reply

        logger.debug(
            "Backend replied in %dms",
            duration_ms,
            extra={**log_extra, "duration_ms": duration_ms},
        )
        return reply

    # ─── Backend-initiated ───────────────────────────────────────

    def notify(self, recipient: str, body: str) -> OutboundMessage:
        """Queue a notification for ``recipient``.

        Raises:
            SessionNotReadyError: the session is not connected.
            InvalidRecipientError: the recipient has no digits.
            NotificationError: the body is empty.
        """
        if not self._session.is_ready():
            raise SessionNotReadyError("WhatsApp not ready yet")

        chat_id = to_chat_id(recipient)
        if not body or not body.strip():
            raise NotificationError("Missing message text")

        msg = OutboundMessage(recipient_id=chat_id, body=body)
        self._queue.enqueue(msg)
        metrics.inc("relay.notifications.queued")
        logger.info("Notification queued for %s", chat_id, extra={"recipient": chat_id})
        return msg

    def stats(self) -> dict:
        return {
            "in_flight": len(self._in_flight),
            "recent_keys": len(self._recent),
        }
