"""
Session — the process-wide pairing/connection state machine.

    UNINITIALIZED → PAIRING → AUTHENTICATED → READY → DISCONNECTED
                                                      │
                         PAIRING / AUTHENTICATED / READY ←┘

Only the supervisor's dispatcher task calls the on_* methods. Everyone else
(control plane, delivery pipeline, outbound queue) reads through
is_ready(), current_code(), wait_ready() and snapshot().
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum

from chatrelay.core.metrics import metrics

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    PAIRING = "pairing"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    DISCONNECTED = "disconnected"


# States a fresh pairing code must not pull the session back from
_PAST_PAIRING = frozenset({SessionState.AUTHENTICATED, SessionState.READY})


class Session:
    """Single logical messaging session."""

    def __init__(self) -> None:
        self._state = SessionState.UNINITIALIZED
        self._pairing_code: str | None = None
        self._ready_event = asyncio.Event()
        self._own_id: str | None = None
        self._last_disconnect_reason: str | None = None
        self._last_auth_failure: str | None = None
        self._loading: dict | None = None
        self._updated_at = time.time()

    # ─── Reads ───────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def own_id(self) -> str | None:
        return self._own_id

    def is_ready(self) -> bool:
        return self._ready_event.is_set()

    def current_code(self) -> str | None:
        return self._pairing_code

    async def wait_ready(self) -> None:
        """Block until the session is READY (returns immediately if it is)."""
        await self._ready_event.wait()

    def snapshot(self) -> dict:
        return {
            "state": self._state.value,
            "ready": self.is_ready(),
            "has_code": self._pairing_code is not None,
            "own_id": self._own_id,
            "last_disconnect_reason": self._last_disconnect_reason,
            "last_auth_failure": self._last_auth_failure,
            "loading": self._loading,
            "updated_at": self._updated_at,
        }

    # ─── Transitions ─────────────────────────────────────────────

    def on_pairing_code_issued(self, code: str) -> None:
        if self._state in _PAST_PAIRING:
            logger.debug("Ignoring pairing code in state %s", self._state.value)
            return
        self._pairing_code = code
        self._transition(SessionState.PAIRING)
        logger.info("Pairing code received (also available at /qr)")

    def on_authenticated(self) -> None:
        if self._state in _PAST_PAIRING:
            return
        self._transition(SessionState.AUTHENTICATED)
        logger.info("WhatsApp authenticated")

    def on_auth_failure(self, message: str) -> None:
        self._last_auth_failure = message
        self._pairing_code = None
        self._ready_event.clear()
        self._transition(SessionState.DISCONNECTED)
        logger.error("Authentication failed: %s", message, extra={"reason": message})

    def on_ready(self, own_id: str | None = None) -> None:
        self._pairing_code = None
        self._loading = None
        if own_id:
            self._own_id = own_id
        self._transition(SessionState.READY)
        self._ready_event.set()
        logger.info("WhatsApp client is READY")

    def on_disconnected(self, reason: str) -> None:
        self._last_disconnect_reason = reason
        self._ready_event.clear()
        self._transition(SessionState.DISCONNECTED)
        logger.warning("WhatsApp disconnected: %s", reason, extra={"reason": reason})

    def on_loading(self, percent: int, message: str) -> None:
        self._loading = {"percent": percent, "message": message}
        logger.info("Loading: %d%% - %s", percent, message)

    def _transition(self, new_state: SessionState) -> None:
        if new_state is self._state:
            return
        logger.debug(
            "Session %s → %s",
            self._state.value,
            new_state.value,
            extra={"state": new_state.value},
        )
        self._state = new_state
        self._updated_at = time.time()
        metrics.inc("relay.session.transitions", labels={"state": new_state.value})
