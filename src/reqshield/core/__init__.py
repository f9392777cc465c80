"""
Core security pipeline components.

This package contains the request pipeline stages:
- Client identification and fixed-window rate limiting
- Request validation and sanitization
- Double-submit CSRF tokens
- Security audit events
- Response security headers
- Metrics collection
"""
