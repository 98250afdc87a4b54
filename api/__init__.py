"""
HTTP API for the notification engine.

This package provides a single FastAPI application that exposes preferences,
categories, dispatch, notification history and push subscriptions.
"""

from api.main import app

__all__ = ["app"]
