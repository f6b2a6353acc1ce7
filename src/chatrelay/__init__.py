"""chatrelay — bridges WhatsApp conversations to a Django chat backend."""

__version__ = "0.1.0"
