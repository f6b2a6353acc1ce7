"""
Control plane — health, pairing and backend-initiated notification endpoints.

Endpoints:
    GET  /                           → HTML status page
    GET  /health                     → Liveness + session/queue status (always 200)
    GET  /qr                         → Pairing QR code page (auto-refresh)
    GET  /metrics                    → Metrics snapshot
    POST /send-payment-confirmation  → {phone, order_id}
    POST /start-address-flow         → {phone, item, quantity, addons}
    POST /send-message               → {phone, text}

Notification endpoints answer 503 while WhatsApp is not ready, 400 on a
missing/invalid phone or empty text, and 200 {"success": true, "queued": true}
once the message is on the outbound queue. Delivery happens asynchronously.
"""

from __future__ import annotations

import html
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, JSONResponse

from chatrelay.core.metrics import metrics
from chatrelay.notifications import templates
from chatrelay.pipeline.delivery import NotificationError, SessionNotReadyError
from chatrelay.session.pairing import qr_data_uri

if TYPE_CHECKING:
    from chatrelay.core.config import RelayConfig
    from chatrelay.outbound.queue import OutboundQueue
    from chatrelay.pipeline.delivery import DeliveryPipeline
    from chatrelay.session.state import Session
    from chatrelay.session.supervisor import SessionSupervisor

logger = logging.getLogger(__name__)

QR_REFRESH_SECONDS = 5


def _failure(error: str, status_code: int) -> JSONResponse:
    return JSONResponse({"success": False, "error": error}, status_code=status_code)


def _page(title: str, body: str, refresh: int | None = None) -> HTMLResponse:
    meta = f'<meta http-equiv="refresh" content="{refresh}">' if refresh else ""
    return HTMLResponse(
        "<!DOCTYPE html><html><head>"
        f"<title>{html.escape(title)}</title>{meta}"
        "</head><body style=\"font-family: sans-serif; text-align: center; "
        "padding: 40px;\">"
        f"{body}</body></html>"
    )


def create_control_router(
    session: "Session",
    supervisor: "SessionSupervisor",
    pipeline: "DeliveryPipeline",
    queue: "OutboundQueue",
    config: "RelayConfig",
) -> APIRouter:
    """Create the control plane router."""

    router = APIRouter(tags=["control"])

    # ─── Status ───────────────────────────────────────────────

    @router.get("/")
    async def index() -> HTMLResponse:
        if session.is_ready():
            body = "<h1>✅ WhatsApp connected</h1><p>The bot is running.</p>"
        else:
            body = (
                "<h1>⏳ WhatsApp not connected</h1>"
                f"<p>State: {html.escape(session.state.value)}</p>"
                '<p><a href="/qr">Scan the pairing code</a></p>'
            )
        return _page("WhatsApp Bot", body)

    @router.get("/health")
    async def health() -> JSONResponse:
        """Liveness check. Stays 200 while the transport is still connecting."""
        return JSONResponse(
            {
                "status": "running",
                "whatsapp_ready": session.is_ready(),
                "state": session.state.value,
                "has_qr": bool(session.current_code()),
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "django_endpoint": config.backend.chat_url,
                "queue": queue.stats(),
                "supervisor": supervisor.status(),
            }
        )

    @router.get("/qr")
    async def qr() -> HTMLResponse:
        if session.is_ready():
            return _page("WhatsApp QR", "<h1>✅ WhatsApp already connected</h1>")

        code = session.current_code()
        if not code:
            return _page(
                "WhatsApp QR",
                "<h1>QR code not generated yet</h1>"
                "<p>Waiting for WhatsApp to start. This page refreshes itself.</p>",
                refresh=QR_REFRESH_SECONDS,
            )

        return _page(
            "WhatsApp QR",
            "<h1>Scan with WhatsApp</h1>"
            "<p>Open WhatsApp → Linked devices → Link a device</p>"
            f'<img src="{html.escape(qr_data_uri(code))}" '
            'alt="WhatsApp pairing QR code">',
            refresh=QR_REFRESH_SECONDS,
        )

    @router.get("/metrics")
    async def get_metrics() -> JSONResponse:
        return JSONResponse(metrics.snapshot())

    # ─── Backend-initiated notifications ──────────────────────

    async def _read_body(request: Request) -> dict[str, Any]:
        try:
            body = await request.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _notify(phone: Any, text: str, kind: str) -> JSONResponse:
        try:
            pipeline.notify(str(phone or ""), text)
        except SessionNotReadyError as e:
            return _failure(str(e), 503)
        except NotificationError as e:
            return _failure(str(e), 400)

        logger.info("%s queued", kind)
        return JSONResponse({"success": True, "queued": True})

    @router.post("/send-payment-confirmation")
    async def send_payment_confirmation(request: Request) -> JSONResponse:
        body = await _read_body(request)
        text = templates.payment_confirmation(
            body.get("order_id"), config.notifications.support_url
        )
        return _notify(body.get("phone"), text, "Payment confirmation")

    @router.post("/start-address-flow")
    async def start_address_flow(request: Request) -> JSONResponse:
        body = await _read_body(request)
        addons = body.get("addons")
        text = templates.address_request(
            body.get("item"),
            body.get("quantity"),
            addons if isinstance(addons, list) else None,
        )
        return _notify(body.get("phone"), text, "Address request")

    @router.post("/send-message")
    async def send_message(request: Request) -> JSONResponse:
        body = await _read_body(request)
        return _notify(body.get("phone"), str(body.get("text") or ""), "Message")

    return router
