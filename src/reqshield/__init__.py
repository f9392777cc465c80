"""
reqshield - Request-security middleware pipeline

An ASGI middleware that rate-limits, sanitizes, CSRF-protects and audits
every request before it reaches the application, and decorates the
response on the way out.
"""

__version__ = "0.1.0"

from .main import app

__all__ = ["app"]
