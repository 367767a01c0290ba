"""
Admin API module for season finalization and reward distribution.
"""

from .admin_auth import AdminAuth, require_admin_auth
from .admin_routes import admin_router

__all__ = [
    "AdminAuth",
    "require_admin_auth",
    "admin_router"
]
