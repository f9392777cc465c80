"""
API endpoints package.

Contains FastAPI routers for the service's own endpoints:
- /metrics - Prometheus metrics
"""
from .metrics import router as metrics_router

__all__ = ["metrics_router"]
