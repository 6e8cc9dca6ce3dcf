"""Tollgate Routes Package.

Route handlers:
- proxy: /api/{path} metered proxy
- metrics: health, readiness and Prometheus metrics
"""
from tollgate.app.routes import metrics, proxy

__all__ = ["metrics", "proxy"]
