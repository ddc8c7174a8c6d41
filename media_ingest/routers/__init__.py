"""Routers package initialization"""
from .uploads import router as uploads_router
from .videos import router as videos_router
from .system import router as system_router

__all__ = ["uploads_router", "videos_router", "system_router"]
