"""
API routers for the clip service.
"""

from sermonclips.routers import assets, clips, health, jobs, uploads

__all__ = ["assets", "clips", "health", "jobs", "uploads"]
