# contact_api/routes/__init__.py
"""
API route handlers.
"""

from contact_api.routes.contact import router as contact_router
from contact_api.routes.health import router as health_router

__all__ = [
    "contact_router",
    "health_router",
]
