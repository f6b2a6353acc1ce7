"""Tests for the control plane endpoints."""

import time

import httpx
import pytest
from fastapi.testclient import TestClient

from chatrelay.core.config import (
    BackendConfig,
    NotificationConfig,
    QueueConfig,
    RelayConfig,
)
from chatrelay.core.metrics import metrics
from chatrelay.main import build_runtime, create_app

from conftest import FakeTransport


def _wait_sent(transport: FakeTransport, count: int = 1, timeout: float = 1.0):
    deadline = time.monotonic() + timeout
    while len(transport.sent) < count and time.monotonic() < deadline:
        time.sleep(0.01)
    return transport.sent


@pytest.fixture
def runtime():
    config = RelayConfig(
        backend=BackendConfig(base_url="http://django.test", chat_path="/api/chat/"),
        queue=QueueConfig(send_backoff=0.01),
        notifications=NotificationConfig(support_url="https://wa.me/+10000000000"),
    )
    return build_runtime(
        config,
        transport=FakeTransport(),
        backend_transport=httpx.MockTransport(
            lambda r: httpx.Response(200, json={"reply_text": "ok"})
        ),
    )


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as c:
        yield c


class TestStatusEndpoints:
    def test_health_while_connecting(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "running"
        assert data["whatsapp_ready"] is False
        assert data["state"] == "uninitialized"
        assert data["has_qr"] is False
        assert data["django_endpoint"] == "http://django.test/api/chat/"
        assert data["queue"]["pending"] == 0
        assert data["supervisor"]["reinit_count"] == 0
        assert "timestamp" in data

    def test_health_when_ready(self, client, runtime):
        runtime.session.on_ready("1000@c.us")
        data = client.get("/health").json()
        assert data["whatsapp_ready"] is True
        assert data["state"] == "ready"

    def test_qr_not_generated(self, client):
        resp = client.get("/qr")
        assert resp.status_code == 200
        assert "not generated yet" in resp.text
        assert 'http-equiv="refresh"' in resp.text

    def test_qr_renders_scannable_image(self, client, runtime):
        runtime.session.on_pairing_code_issued("2@abc,def==,ghi==,jkl==")
        resp = client.get("/qr")
        assert '<img src="data:image/svg+xml' in resp.text
        assert "2@abc,def==" not in resp.text
        assert 'content="5"' in resp.text
        assert client.get("/health").json()["has_qr"] is True

    def test_qr_when_connected(self, client, runtime):
        runtime.session.on_ready()
        resp = client.get("/qr")
        assert "already connected" in resp.text

    def test_index_page(self, client, runtime):
        assert "not connected" in client.get("/").text
        runtime.session.on_ready()
        assert "WhatsApp connected" in client.get("/").text

    def test_metrics(self, client):
        metrics.inc("relay.outbound.sent")
        data = client.get("/metrics").json()
        assert data["counters"]["relay.outbound.sent"] == 1


class TestPaymentConfirmation:
    def test_not_ready(self, client):
        resp = client.post(
            "/send-payment-confirmation", json={"phone": "2335551111", "order_id": 7}
        )
        assert resp.status_code == 503
        assert resp.json() == {"success": False, "error": "WhatsApp not ready yet"}

    @pytest.mark.parametrize("body", [{"order_id": 7}, {"phone": "", "order_id": 7}])
    def test_missing_phone(self, client, runtime, body):
        runtime.session.on_ready()
        resp = client.post("/send-payment-confirmation", json=body)
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": "Missing phone"}

    def test_queued_and_delivered(self, client, runtime):
        runtime.session.on_ready()
        resp = client.post(
            "/send-payment-confirmation",
            json={"phone": "+233 555 1111", "order_id": 42},
        )
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "queued": True}

        sent = _wait_sent(runtime.transport)
        assert sent[0][0] == "2335551111@c.us"
        assert "order #42" in sent[0][1]
        assert "https://wa.me/+10000000000" in sent[0][1]


class TestAddressFlow:
    def test_summary_with_addons(self, client, runtime):
        runtime.session.on_ready()
        resp = client.post(
            "/start-address-flow",
            json={
                "phone": "2335551111",
                "item": "Jollof",
                "quantity": 2,
                "addons": [{"name": "Chicken"}, {"price": 3}, {"name": "Egg"}],
            },
        )
        assert resp.status_code == 200

        body = _wait_sent(runtime.transport)[0][1]
        assert body.startswith("🧾 Order Summary:\n2 x Jollof\n")
        assert "➕ Add-ons: Chicken, Egg\n" in body
        assert body.endswith("📍 Please type your *delivery address* to continue.")

    def test_not_ready(self, client):
        resp = client.post("/start-address-flow", json={"phone": "2335551111"})
        assert resp.status_code == 503


class TestSendMessage:
    def test_empty_text(self, client, runtime):
        runtime.session.on_ready()
        resp = client.post("/send-message", json={"phone": "2335551111", "text": ""})
        assert resp.status_code == 400
        assert resp.json()["success"] is False

    def test_invalid_json_body(self, client, runtime):
        runtime.session.on_ready()
        resp = client.post(
            "/send-message",
            content=b"not json",
            headers={"content-type": "application/json"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "Missing phone"

    def test_message_sent(self, client, runtime):
        runtime.session.on_ready()
        resp = client.post(
            "/send-message", json={"phone": "15551234567", "text": "Your order shipped"}
        )
        assert resp.json() == {"success": True, "queued": True}
        assert _wait_sent(runtime.transport) == [
            ("15551234567@c.us", "Your order shipped")
        ]
