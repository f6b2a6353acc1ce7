"""
BridgeTransport — WhatsApp Web reached through a bridge process over WebSocket.

The bridge is a small Node.js service hosting whatsapp-web.js with LocalAuth.
It forwards the client's events as JSON frames and executes commands sent
back over the same socket.

Frame shape (both directions):
    {"type": str, "requestId": str | absent, "payload": dict}

Commands (adapter → bridge), each answered by a "response" frame with the
same requestId and payload {"ok": bool, "error"?: str, "retryable"?: bool}:
    initialize {clientId, dataPath}
    send_text  {to, text}
    destroy    {}

Events (bridge → adapter):
    qr {code}, authenticated, auth_failure {message}, ready {wid},
    disconnected {reason}, message {...}, loading {percent, message}
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from chatrelay.core.config import TransportConfig
from chatrelay.transport import auth_store
from chatrelay.transport.base import Transport, TransportError, TransportSendError
from chatrelay.transport.events import TransportEvent

logger = logging.getLogger(__name__)

# Reason reported when the bridge socket drops without a disconnected frame
BRIDGE_CLOSED = "bridge_closed"


class BridgeTransport(Transport):
    """Transport backed by the WhatsApp Web bridge."""

    name = "whatsapp-bridge"

    def __init__(
        self,
        config: TransportConfig,
        connect_factory: Callable[..., Awaitable[Any]] | None = None,
    ):
        super().__init__()
        self._config = config
        self._connect_factory = connect_factory or ws_connect
        self._ws: Any | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._closing = False

    # ─── Lifecycle ───────────────────────────────────────────────

    async def connect(self) -> None:
        if self._ws is not None:
            return

        auth_store.ensure_auth_dir(self._config.auth_path)

        headers = {}
        if self._config.bridge_token:
            headers["Authorization"] = f"Bearer {self._config.bridge_token}"

        logger.info("Connecting to WhatsApp bridge at %s", self._config.bridge_url)
        try:
            self._ws = await self._connect_factory(
                self._config.bridge_url,
                additional_headers=headers or None,
                ping_interval=20,
                ping_timeout=20,
            )
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            raise TransportError(
                f"Cannot reach bridge at {self._config.bridge_url}: {e}"
            ) from e

        self._connected = True
        self._reader_task = asyncio.create_task(
            self._read_loop(), name="bridge-reader"
        )

        try:
            response = await self._send_command(
                "initialize",
                {
                    "clientId": self._config.client_id,
                    "dataPath": str(Path(self._config.auth_path).resolve()),
                },
                timeout=self._config.init_timeout,
            )
        except TransportError:
            await self.close()
            raise

        if not response.get("ok", False):
            await self.close()
            raise TransportError(
                f"Bridge failed to initialize client: {response.get('error', 'unknown')}"
            )

        logger.info("WhatsApp client initialization started")

    async def close(self) -> None:
        self._closing = True
        try:
            if self._ws is not None and self._connected:
                with contextlib.suppress(TransportError):
                    await self._send_command("destroy", {}, timeout=5.0)

            if self._ws is not None:
                with contextlib.suppress(Exception):
                    await self._ws.close()

            if self._reader_task is not None:
                self._reader_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._reader_task
                self._reader_task = None
        finally:
            self._ws = None
            self._connected = False
            self._fail_pending("Transport closed")
            self._closing = False

    async def send_message(self, recipient_id: str, text: str) -> dict[str, Any]:
        if self._ws is None or not self._connected:
            raise TransportSendError("Bridge not connected", retryable=True)

        try:
            response = await self._send_command(
                "send_text",
                {"to": recipient_id, "text": text},
                timeout=self._config.command_timeout,
            )
        except TransportError as e:
            raise TransportSendError(str(e), retryable=True) from e

        if not response.get("ok", False):
            raise TransportSendError(
                str(response.get("error", "send failed")),
                retryable=bool(response.get("retryable", True)),
            )
        return response

    async def clear_stale_state(self) -> list[Path]:
        return await asyncio.to_thread(
            auth_store.clear_stale_locks,
            self._config.auth_path,
            self._config.client_id,
        )

    async def reset_session(self) -> None:
        await asyncio.to_thread(
            auth_store.wipe_session,
            self._config.auth_path,
            self._config.client_id,
        )

    async def status(self) -> dict:
        return {
            "name": self.name,
            "connected": self._connected,
            "bridge_url": self._config.bridge_url,
            "pending_commands": len(self._pending),
        }

    # ─── Commands ────────────────────────────────────────────────

    async def _send_command(
        self, command: str, payload: dict[str, Any], timeout: float
    ) -> dict[str, Any]:
        if self._ws is None:
            raise TransportError("Bridge not connected")

        request_id = uuid.uuid4().hex
        future: asyncio.Future[dict[str, Any]] = (
            asyncio.get_running_loop().create_future()
        )
        self._pending[request_id] = future

        frame = {"type": command, "requestId": request_id, "payload": payload}
        try:
            await self._ws.send(json.dumps(frame))
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"Bridge command {command} timed out after {timeout:.0f}s"
            ) from e
        except (ConnectionClosed, OSError) as e:
            raise TransportError(f"Bridge connection lost during {command}: {e}") from e
        finally:
            self._pending.pop(request_id, None)

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransportError(reason))
        self._pending.clear()

    # ─── Inbound frames ──────────────────────────────────────────

    async def _read_loop(self) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            async for raw in ws:
                self._handle_frame(raw)
        except ConnectionClosed as e:
            logger.warning("Bridge connection closed: %s", e)
        finally:
            if not self._closing:
                self._connected = False
                self._fail_pending("Bridge connection closed")
                self._emit(TransportEvent.disconnected(BRIDGE_CLOSED))

    def _handle_frame(self, raw: str | bytes) -> None:
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("Invalid JSON from bridge")
            return

        if not isinstance(data, dict):
            logger.warning("Invalid bridge frame shape")
            return

        frame_type = data.get("type")
        payload = data.get("payload")
        if not isinstance(payload, dict):
            payload = {}

        if frame_type == "response":
            request_id = data.get("requestId")
            future = self._pending.get(request_id) if isinstance(request_id, str) else None
            if future is not None and not future.done():
                future.set_result(payload)
            return

        if frame_type == "qr":
            code = payload.get("code") or payload.get("qr")
            if isinstance(code, str) and code:
                self._emit(TransportEvent.pairing_code(code))
            return

        if frame_type == "authenticated":
            self._emit(TransportEvent.authenticated())
            return

        if frame_type == "auth_failure":
            self._emit(TransportEvent.auth_failure(str(payload.get("message", ""))))
            return

        if frame_type == "ready":
            wid = payload.get("wid")
            self._emit(TransportEvent.ready(wid if isinstance(wid, str) else None))
            return

        if frame_type == "disconnected":
            self._emit(TransportEvent.disconnected(str(payload.get("reason", "unknown"))))
            return

        if frame_type == "message":
            self._emit(TransportEvent.message(payload))
            return

        if frame_type == "loading":
            percent = payload.get("percent", 0)
            self._emit(
                TransportEvent.loading(
                    int(percent) if isinstance(percent, (int, float)) else 0,
                    str(payload.get("message", "")),
                )
            )
            return

        logger.debug("Ignoring bridge frame of type %r", frame_type)
