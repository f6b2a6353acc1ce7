"""Tests for pairing QR rendering."""

from chatrelay.session.pairing import qr_data_uri, qr_terminal

PAYLOAD = "2@Xy9fQ0a1,1uQk0mZ6m3iVw7Q==,pB6gq2x8Tt4c5FWD2aQ==,Hk3Zs0r9tJ1="


class TestQrDataUri:
    def test_svg_data_uri(self):
        uri = qr_data_uri(PAYLOAD)
        assert uri.startswith("data:image/svg+xml")
        assert "svg" in uri

    def test_distinct_payloads_render_differently(self):
        assert qr_data_uri(PAYLOAD) != qr_data_uri(PAYLOAD + "x")


class TestQrTerminal:
    def test_block_rendering(self):
        art = qr_terminal(PAYLOAD)
        lines = art.splitlines()
        assert len(lines) > 10
        # Compact mode packs two rows per line, so the art is wider than tall
        assert len(lines) < len(lines[0])
