"""Message records that flow through the relay."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class InboundMessage:
    """A user message accepted by the normalizer.

    ``reply_to`` is the provider chat id the answer goes back to;
    ``raw`` is provider metadata passed through untouched for the backend.
    """

    external_id: str
    text: str
    reply_to: str
    provider_message_id: str | None = None
    received_at: datetime = field(default_factory=_utcnow)
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OutboundMessage:
    """A reply or a backend-initiated notification."""

    recipient_id: str
    body: str
    correlation_id: str | None = None  # inbound provider id, None for notifications
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class Filtered:
    """Normalizer verdict for events that must not be forwarded."""

    reason: str
