"""Status dashboard for the stream runner."""

from .app import DashboardState, create_dashboard_app

__all__ = ["DashboardState", "create_dashboard_app"]
