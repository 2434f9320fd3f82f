"""
Inspection API for the notification outbox.

This package provides a small read-only FastAPI application for operators:
- Recent entries, filterable by status
- Per-status counts
- Single entry lookup
"""

from api.main import app

__all__ = ["app"]
