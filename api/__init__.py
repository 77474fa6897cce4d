"""
HTTP ingress for the order pipeline.

This package provides a single FastAPI application that exposes:
- Order intake
- Queue statistics
- Dead-letter inspection and redrive
"""

from api.main import app

__all__ = ["app"]
