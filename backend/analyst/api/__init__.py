"""API routes for the extraction service."""

from analyst.api import chatter_routes, health_routes, plotline_routes, points_routes, thread_routes

__all__ = ["chatter_routes", "health_routes", "plotline_routes", "points_routes", "thread_routes"]
