"""
chatrelay Transport Layer

The transport owns the connection to WhatsApp and nothing else:
- Connects/initializes the client session (persisted under the auth path)
- Sends text messages and acknowledges them
- Publishes lifecycle and message events on a single queue

The production transport talks to a whatsapp-web.js bridge process over a
WebSocket (see bridge.py). Tests plug in their own Transport subclass.

Usage:
    from chatrelay.transport import BridgeTransport

    transport = BridgeTransport(config.transport)
    await transport.connect()

    async for event in transport.events():
        ...
"""

from chatrelay.transport.base import Transport, TransportError, TransportSendError
from chatrelay.transport.bridge import BridgeTransport
from chatrelay.transport.events import TransportEvent, TransportEventKind

__all__ = [
    "Transport",
    "TransportError",
    "TransportSendError",
    "BridgeTransport",
    "TransportEvent",
    "TransportEventKind",
]
