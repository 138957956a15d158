"""API package exports."""
from . import routes_admin, routes_callback, routes_status

__all__ = [
    "routes_admin",
    "routes_callback",
    "routes_status",
]
