"""Text builders for backend-initiated notifications."""

from __future__ import annotations

from typing import Any


def payment_confirmation(order_id: Any, support_url: str) -> str:
    return (
        f"✅ Payment received for your order #{order_id}!\n"
        "We will give you a call in a sec.\n"
        f"Contact support at {support_url}"
    )


def address_request(item: Any, quantity: Any, addons: list | None = None) -> str:
    """Order summary followed by a prompt for the delivery address.

    Add-ons are dicts with a ``name``; entries without one are skipped.
    """
    names = [
        str(addon["name"])
        for addon in (addons or [])
        if isinstance(addon, dict) and addon.get("name")
    ]
    addon_line = f"➕ Add-ons: {', '.join(names)}\n" if names else ""
    return (
        f"🧾 Order Summary:\n{quantity} x {item}\n"
        f"{addon_line}"
        "\n\n📍 Please type your *delivery address* to continue."
    )
