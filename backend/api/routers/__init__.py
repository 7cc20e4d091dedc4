"""API Routers package."""
from . import submissions, overview, admin

__all__ = ['submissions', 'overview', 'admin']
