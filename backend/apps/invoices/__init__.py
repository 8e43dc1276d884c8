"""Invoices app module.

Provides the FastAPI router for drafts, finalization and cancellation (API v1).
"""

from .api import router as invoices_router  # re-export for app integration

__all__ = [
    "invoices_router",
]
