"""Tests for the inbound message normalizer."""

import pytest

from chatrelay.core.metrics import metrics
from chatrelay.pipeline.models import Filtered, InboundMessage
from chatrelay.pipeline.normalizer import (
    extract_external_id,
    extract_provider_message_id,
    normalize,
)


def _msg(**overrides):
    payload = {
        "from": "15551234567@c.us",
        "body": "hello",
        "id": {"_serialized": "false_15551234567@c.us_ABC123", "id": "ABC123"},
        "timestamp": 1700000000,
        "hasMedia": False,
        "type": "chat",
        "fromMe": False,
    }
    payload.update(overrides)
    return payload


class TestNormalize:
    def test_direct_text_message(self):
        result = normalize(_msg())
        assert isinstance(result, InboundMessage)
        assert result.external_id == "15551234567"
        assert result.text == "hello"
        assert result.reply_to == "15551234567@c.us"
        assert result.provider_message_id == "false_15551234567@c.us_ABC123"

    def test_raw_carries_provider_fields(self):
        result = normalize(_msg())
        assert result.raw == {
            "from": "15551234567@c.us",
            "timestamp": 1700000000,
            "hasMedia": False,
            "type": "chat",
            "platform": "whatsapp",
        }

    def test_body_is_trimmed(self):
        result = normalize(_msg(body="  hi there \n"))
        assert result.text == "hi there"

    @pytest.mark.parametrize(
        "sender", ["998877@g.us", "status@broadcast", "12036@newsletter"]
    )
    def test_group_and_broadcast_filtered(self, sender):
        result = normalize(_msg(**{"from": sender}))
        assert result == Filtered("group")

    def test_status_update_filtered(self):
        assert normalize(_msg(isStatus=True)) == Filtered("group")

    def test_own_message_filtered(self):
        assert normalize(_msg(fromMe=True)) == Filtered("self")

    def test_own_id_echo_filtered(self):
        result = normalize(_msg(), own_id="15551234567@c.us")
        assert result == Filtered("self")

    def test_system_message_filtered(self):
        assert normalize(_msg(type="e2e_notification")) == Filtered("system")

    @pytest.mark.parametrize("body", ["", "   ", None])
    def test_empty_body_filtered(self, body):
        assert normalize(_msg(body=body)) == Filtered("empty")

    def test_media_without_caption_filtered(self):
        result = normalize(_msg(type="image", hasMedia=True, body=""))
        assert result == Filtered("empty")

    @pytest.mark.parametrize(
        "payload",
        [None, "string", {"body": "no sender"}, {"from": "", "body": "x"}],
    )
    def test_malformed_filtered(self, payload):
        assert normalize(payload) == Filtered("malformed")

    def test_non_numeric_sender_filtered(self):
        assert normalize(_msg(**{"from": "abc@c.us"})) == Filtered("malformed")

    def test_filtered_reasons_counted(self):
        normalize(_msg(**{"from": "998877@g.us"}))
        normalize(_msg(body=""))
        assert metrics.counter("relay.inbound.filtered", {"reason": "group"}) == 1
        assert metrics.counter("relay.inbound.filtered", {"reason": "empty"}) == 1


class TestExtractors:
    def test_external_id_strips_formatting(self):
        assert extract_external_id("+1 (555) 123-4567@c.us") == "15551234567"

    def test_external_id_without_suffix(self):
        assert extract_external_id("233555111111") == "233555111111"

    def test_message_id_plain_string(self):
        assert extract_provider_message_id({"id": "XYZ"}) == "XYZ"

    def test_message_id_falls_back_to_bare_id(self):
        assert extract_provider_message_id({"id": {"id": "BARE"}}) == "BARE"

    def test_message_id_missing(self):
        assert extract_provider_message_id({}) is None
        assert extract_provider_message_id({"id": {}}) is None
