"""Route exports for the API layer.

Re-exports the admin, retrieval, and typical-example routers so callers can include them with a single import.
"""

from .admin import router as admin_router
from .retrieval import router as retrieval_router
from .typical import router as typical_router

__all__ = ["admin_router", "retrieval_router", "typical_router"]
