"""Inbound path: normalize → dedup → backend → reply."""
