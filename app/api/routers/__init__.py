"""
app/api/routers package marker.
"""

from app.api.routers.changes import router as changes_router
from app.api.routers.scans import router as scans_router

__all__ = [
    "changes_router",
    "scans_router",
]
