"""
Webhook Package

- handler: FastAPI route handlers that enqueue review jobs
- security: webhook signature verification and event filtering
"""

from app.webhook.handler import router

__all__ = ["router"]
