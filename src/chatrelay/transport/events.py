"""
Transport Event Types — the unified event format between transport and supervisor.

Every transport turns whatever its underlying library emits (callbacks,
socket frames, ...) into TransportEvent objects on a single queue. The
supervisor consumes that queue from one task, so events are applied in the
order the transport produced them.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TransportEventKind(str, Enum):
    """What happened on the transport."""

    PAIRING_CODE = "pairing_code"  # payload: {"code": str}
    AUTHENTICATED = "authenticated"
    AUTH_FAILURE = "auth_failure"  # payload: {"message": str}
    READY = "ready"  # payload: {"wid": str | None}
    DISCONNECTED = "disconnected"  # payload: {"reason": str}
    MESSAGE = "message"  # payload: provider-native message dict
    LOADING = "loading"  # payload: {"percent": int, "message": str}


@dataclass
class TransportEvent:
    """A single event emitted by a transport."""

    kind: TransportEventKind
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def pairing_code(cls, code: str) -> "TransportEvent":
        return cls(TransportEventKind.PAIRING_CODE, {"code": code})

    @classmethod
    def authenticated(cls) -> "TransportEvent":
        return cls(TransportEventKind.AUTHENTICATED)

    @classmethod
    def auth_failure(cls, message: str) -> "TransportEvent":
        return cls(TransportEventKind.AUTH_FAILURE, {"message": message})

    @classmethod
    def ready(cls, wid: str | None = None) -> "TransportEvent":
        return cls(TransportEventKind.READY, {"wid": wid})

    @classmethod
    def disconnected(cls, reason: str) -> "TransportEvent":
        return cls(TransportEventKind.DISCONNECTED, {"reason": reason})

    @classmethod
    def message(cls, payload: dict[str, Any]) -> "TransportEvent":
        return cls(TransportEventKind.MESSAGE, payload)

    @classmethod
    def loading(cls, percent: int, message: str = "") -> "TransportEvent":
        return cls(TransportEventKind.LOADING, {"percent": percent, "message": message})
