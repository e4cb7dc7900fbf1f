"""
API routers package.
"""
from pullbox.routers.auth import router as auth_router
from pullbox.routers.collections import router as collections_router
from pullbox.routers.public import router as public_router

__all__ = ["auth_router", "collections_router", "public_router"]
