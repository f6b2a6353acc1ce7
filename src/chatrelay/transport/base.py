"""
Base Transport Interface - Abstract base class for messaging transports.

A transport is the black-box messaging capability: connect, emit events,
send a message, report its state. The SessionSupervisor talks to transports
only through this interface.

Events are not delivered through registered callbacks. Each transport owns
an asyncio.Queue of TransportEvent objects and the supervisor reads it via
events(), which keeps the event stream serialized on one consumer task.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, AsyncIterator

from chatrelay.transport.events import TransportEvent

logger = logging.getLogger(__name__)


class TransportError(RuntimeError):
    """Raised when the transport cannot connect or a command fails."""


class TransportSendError(TransportError):
    """Raised when a message could not be handed to the messaging network."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class Transport(ABC):
    """
    Base class for all transports.

    Subclasses implement connect/close/send_message and push events with
    _emit(). The event queue outlives individual connections so a reconnect
    does not lose the consumer.
    """

    # Transport name - must be unique
    name: str = "base"

    def __init__(self, event_queue_size: int = 1000):
        self._events: asyncio.Queue[TransportEvent] = asyncio.Queue(
            maxsize=event_queue_size
        )
        self._connected = False

    @abstractmethod
    async def connect(self) -> None:
        """
        Start the underlying client and begin emitting events.

        Returns once initialization has been accepted by the messaging
        library. Pairing and readiness are reported later as events.

        Raises:
            TransportError: If initialization fails.
        """

    @abstractmethod
    async def close(self) -> None:
        """Release the connection. Safe to call more than once."""

    @abstractmethod
    async def send_message(self, recipient_id: str, text: str) -> dict[str, Any]:
        """
        Send a text message.

        Args:
            recipient_id: Provider chat id, e.g. "15551234567@c.us"
            text: Message body

        Returns:
            Acknowledgement dict from the messaging library

        Raises:
            TransportSendError: If the message was not accepted.
        """

    async def clear_stale_state(self) -> list[Path]:
        """Remove lock state a crashed process may have left behind.

        Returns the paths removed. The default transport keeps no local state.
        """
        return []

    async def reset_session(self) -> None:
        """Forget persisted credentials so the next connect issues a new code."""

    async def status(self) -> dict:
        """Transport status for the control plane."""
        return {"name": self.name, "connected": self._connected}

    async def events(self) -> AsyncIterator[TransportEvent]:
        """Yield events forever, in emission order.

        Stops only when the consuming task is cancelled.
        """
        while True:
            yield await self._events.get()

    def _emit(self, event: TransportEvent) -> None:
        """Internal: queue an event for the supervisor (never blocks)."""
        try:
            self._events.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "Transport %s: event queue full, dropping %s event",
                self.name,
                event.kind.value,
            )

    @property
    def is_connected(self) -> bool:
        return self._connected

    def __repr__(self) -> str:
        return f"<{self.name} Transport>"
