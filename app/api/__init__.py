"""
API Package

- stats: review totals, queue counts and health snapshot endpoints
"""

from app.api.stats import router as stats_router

__all__ = ["stats_router"]
