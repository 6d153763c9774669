"""Sandbox gateway: backend process supervisor, request proxy and durable backup sync."""

__version__ = "0.1.0"
