"""API routes module."""

from app.api.routes.cars import router as cars_router
from app.api.routes.sync import router as sync_router

__all__ = [
    "cars_router",
    "sync_router",
]
