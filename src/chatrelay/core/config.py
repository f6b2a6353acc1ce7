"""
chatrelay Configuration — single source of truth for all settings.

Reads from environment variables with sensible defaults.
Built once at startup and handed to every component; never mutated after.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class BackendConfig:
    """Backend webhook settings (the Django chat endpoint)."""

    base_url: str = "https://www.grabtexts.shop"
    chat_path: str = "/api/chat/incoming/"
    auth_token: str = ""
    timeout: float = 15.0
    default_reply: str = "Thank you for your message!"
    unavailable_reply: str = "Service temporarily unavailable. Please try again later."

    @property
    def chat_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.chat_path}"

    @classmethod
    def from_env(cls) -> BackendConfig:
        return cls(
            base_url=os.getenv("DJANGO_BASE_URL", "https://www.grabtexts.shop"),
            chat_path=os.getenv("DJANGO_CHAT_PATH", "/api/chat/incoming/"),
            auth_token=os.getenv("DJANGO_AUTH_TOKEN", ""),
            timeout=float(os.getenv("CHATRELAY_BACKEND_TIMEOUT", "15.0")),
            default_reply=os.getenv(
                "CHATRELAY_DEFAULT_REPLY", "Thank you for your message!"
            ),
            unavailable_reply=os.getenv(
                "CHATRELAY_UNAVAILABLE_REPLY",
                "Service temporarily unavailable. Please try again later.",
            ),
        )


@dataclass(frozen=True)
class TransportConfig:
    """WhatsApp Web bridge settings."""

    bridge_url: str = "ws://127.0.0.1:3001"
    bridge_token: str = ""
    auth_path: str = "./.wwebjs_auth"
    client_id: str = "chatrelay"
    command_timeout: float = 20.0
    init_timeout: float = 120.0

    @classmethod
    def from_env(cls) -> TransportConfig:
        return cls(
            bridge_url=os.getenv("CHATRELAY_BRIDGE_URL", "ws://127.0.0.1:3001"),
            bridge_token=os.getenv("CHATRELAY_BRIDGE_TOKEN", ""),
            auth_path=os.getenv("WWEBJS_AUTH_PATH", "./.wwebjs_auth"),
            client_id=os.getenv("CHATRELAY_CLIENT_ID", "chatrelay"),
            command_timeout=float(os.getenv("CHATRELAY_COMMAND_TIMEOUT", "20.0")),
            init_timeout=float(os.getenv("CHATRELAY_INIT_TIMEOUT", "120.0")),
        )


@dataclass(frozen=True)
class SessionConfig:
    """Supervisor lifecycle settings."""

    init_retry_delay: float = 2.0
    # Reconnection
    reconnect_delay: float = 1.0  # seconds, doubles each attempt
    reconnect_max_delay: float = 30.0
    reconnect_grace: float = 15.0  # wait for the transport's own auto-reconnect
    terminal_qr: bool = True  # also log pairing codes as a terminal QR

    @classmethod
    def from_env(cls) -> SessionConfig:
        return cls(
            init_retry_delay=float(os.getenv("CHATRELAY_INIT_RETRY_DELAY", "2.0")),
            reconnect_delay=float(os.getenv("CHATRELAY_RECONNECT_DELAY", "1.0")),
            reconnect_max_delay=float(
                os.getenv("CHATRELAY_RECONNECT_MAX_DELAY", "30.0")
            ),
            reconnect_grace=float(os.getenv("CHATRELAY_RECONNECT_GRACE", "15.0")),
            terminal_qr=os.getenv("CHATRELAY_TERMINAL_QR", "true").lower() == "true",
        )


@dataclass(frozen=True)
class DedupConfig:
    """Inbound duplicate suppression settings."""

    capacity: int = 5000
    ttl: float = 600.0
    coalesce_window: float = 2.0  # for messages without a provider id

    @classmethod
    def from_env(cls) -> DedupConfig:
        return cls(
            capacity=int(os.getenv("CHATRELAY_DEDUP_CAPACITY", "5000")),
            ttl=float(os.getenv("CHATRELAY_DEDUP_TTL", "600.0")),
            coalesce_window=float(os.getenv("CHATRELAY_COALESCE_WINDOW", "2.0")),
        )


@dataclass(frozen=True)
class QueueConfig:
    """Outbound queue settings."""

    max_depth: int = 50
    send_attempts: int = 3
    send_backoff: float = 1.0  # seconds, doubles each attempt

    @classmethod
    def from_env(cls) -> QueueConfig:
        return cls(
            max_depth=int(os.getenv("CHATRELAY_QUEUE_MAX_DEPTH", "50")),
            send_attempts=int(os.getenv("CHATRELAY_SEND_ATTEMPTS", "3")),
            send_backoff=float(os.getenv("CHATRELAY_SEND_BACKOFF", "1.0")),
        )


@dataclass(frozen=True)
class ServerConfig:
    """Server settings."""

    host: str = "0.0.0.0"
    port: int = 3000
    startup_delay: float = 0.0
    shutdown_grace: float = 10.0

    @classmethod
    def from_env(cls) -> ServerConfig:
        return cls(
            host=os.getenv("CHATRELAY_HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "3000")),
            startup_delay=float(os.getenv("CHATRELAY_STARTUP_DELAY", "0.0")),
            shutdown_grace=float(os.getenv("CHATRELAY_SHUTDOWN_GRACE", "10.0")),
        )


@dataclass(frozen=True)
class NotificationConfig:
    """Templated notification settings."""

    support_url: str = "https://wa.me/+233559665774"

    @classmethod
    def from_env(cls) -> NotificationConfig:
        return cls(
            support_url=os.getenv(
                "CHATRELAY_SUPPORT_URL", "https://wa.me/+233559665774"
            ),
        )


@dataclass(frozen=True)
class RelayConfig:
    """Root configuration, one section per component."""

    backend: BackendConfig = field(default_factory=BackendConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)

    @classmethod
    def from_env(cls) -> RelayConfig:
        return cls(
            backend=BackendConfig.from_env(),
            transport=TransportConfig.from_env(),
            session=SessionConfig.from_env(),
            dedup=DedupConfig.from_env(),
            queue=QueueConfig.from_env(),
            server=ServerConfig.from_env(),
            notifications=NotificationConfig.from_env(),
        )
