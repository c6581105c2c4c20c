"""HTTP route registration."""

from .api_routes import register_api_routes
from .feed_routes import register_feed_routes

__all__ = ["register_api_routes", "register_feed_routes"]
