"""HTTP application assembly."""

from .server import create_app, serve
from .services import AppServices, build_services

__all__ = ["AppServices", "build_services", "create_app", "serve"]
