"""
Pairing code rendering — the WhatsApp "link a device" payload as a QR code.

The same payload is shown two ways:
    qr_data_uri()  → inline SVG for the /qr page (<img src="data:...">)
    qr_terminal()  → block characters for the process log, scannable from a
                     terminal when nobody can reach the HTTP port
"""

from __future__ import annotations

import io

import segno

# Pixels per module in the SVG image
SVG_SCALE = 6
QUIET_ZONE = 4


def _make(code: str) -> segno.QRCode:
    # Medium error correction keeps the symbol small enough for a terminal
    return segno.make_qr(code, error="m")


def qr_data_uri(code: str) -> str:
    """SVG data URI for an <img> tag."""
    return _make(code).svg_data_uri(scale=SVG_SCALE, border=QUIET_ZONE)


def qr_terminal(code: str) -> str:
    """Half-height block rendering (two QR rows per text line)."""
    out = io.StringIO()
    _make(code).terminal(out=out, compact=True, border=2)
    return out.getvalue()
