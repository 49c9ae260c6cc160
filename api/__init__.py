"""API module for HTTP routes.

This module exposes the FastAPI router for the BuildBoard backend.
"""

from api.routes import Services, get_services, router, set_services

__all__ = ["Services", "get_services", "router", "set_services"]
