"""
FastAPI routers for the clip worker.
"""

from clipforge.routers import clips, health

__all__ = ["health", "clips"]
