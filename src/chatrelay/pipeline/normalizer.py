"""WhatsApp Web message normalizer.

Turns the message dict the bridge forwards (whatsapp-web.js ``Message``
fields) into an InboundMessage, or a Filtered verdict for traffic that is not
a direct user text: group chats, broadcasts, our own echoes, system
notifications and media without a caption.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from chatrelay.core.metrics import metrics
from chatrelay.pipeline.models import Filtered, InboundMessage

logger = logging.getLogger(__name__)

# Chat id suffixes for group / broadcast contexts
GROUP_SUFFIXES = ("@g.us", "@broadcast", "@newsletter")

SYSTEM_TYPES = frozenset(
    {
        "e2e_notification",
        "notification_template",
        "gp2",
        "call_log",
        "protocol",
        "revoked",
        "ciphertext",
        "broadcast_notification",
    }
)

# Provider fields copied verbatim into InboundMessage.raw
RAW_FIELDS = ("from", "timestamp", "hasMedia", "type")

_NON_DIGITS = re.compile(r"\D")


def extract_external_id(sender: str) -> str:
    """Digits of the sender's local part ("+1 555-123@c.us" -> "1555123")."""
    local = sender.split("@", 1)[0]
    return _NON_DIGITS.sub("", local)


def extract_provider_message_id(payload: dict[str, Any]) -> str | None:
    """Prefer the fully serialized id over the bare one."""
    msg_id = payload.get("id")
    if isinstance(msg_id, str):
        return msg_id or None
    if isinstance(msg_id, dict):
        serialized = msg_id.get("_serialized")
        if isinstance(serialized, str) and serialized:
            return serialized
        bare = msg_id.get("id")
        if isinstance(bare, str) and bare:
            return bare
    return None


def is_group_chat(sender: str) -> bool:
    return sender.endswith(GROUP_SUFFIXES)


def normalize(
    payload: Any, own_id: str | None = None
) -> InboundMessage | Filtered:
    """Normalize one provider message event.

    Args:
        payload: Message dict from the transport.
        own_id: The session's own chat id, for echo filtering.

    Returns:
        InboundMessage for forwardable user text, Filtered otherwise.
    """
    verdict = _normalize(payload, own_id)
    if isinstance(verdict, Filtered):
        metrics.inc("relay.inbound.filtered", labels={"reason": verdict.reason})
    return verdict


def _normalize(payload: Any, own_id: str | None) -> InboundMessage | Filtered:
    if not isinstance(payload, dict):
        logger.debug("Dropping malformed inbound event (not an object)")
        return Filtered("malformed")

    sender = payload.get("from")
    if not isinstance(sender, str) or not sender.strip():
        logger.debug("Dropping malformed inbound event (missing sender)")
        return Filtered("malformed")
    sender = sender.strip()

    if is_group_chat(sender) or payload.get("isStatus") is True:
        logger.info("Ignoring group/broadcast message")
        return Filtered("group")

    if payload.get("fromMe") is True or (own_id and sender == own_id):
        return Filtered("self")

    if payload.get("type") in SYSTEM_TYPES:
        return Filtered("system")

    external_id = extract_external_id(sender)
    if not external_id:
        logger.debug("Dropping inbound event with non-numeric sender %r", sender)
        return Filtered("malformed")

    body = payload.get("body")
    text = body.strip() if isinstance(body, str) else ""
    if not text:
        logger.info("Skipping empty message", extra={"external_id": external_id})
        return Filtered("empty")

    raw = {key: payload[key] for key in RAW_FIELDS if key in payload}
    raw["platform"] = "whatsapp"

    return InboundMessage(
        external_id=external_id,
        text=text,
        reply_to=sender,
        provider_message_id=extract_provider_message_id(payload),
        raw=raw,
    )
