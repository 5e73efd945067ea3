"""
HTTP API for the notification and credential dispatch layer.

This package provides a single FastAPI application that exposes:
- Message dispatch with provider fallback
- Background receipt delivery and job status
- The password reset flow
- Provider availability
"""

from api.main import app

__all__ = ["app"]
