"""Application layer for meetsync: storage, provider clients, sync and HTTP API."""

from .api import app as api_app

__all__ = ["api_app"]
