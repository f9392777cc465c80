"""
Pydantic data models package.

Contains the security event schema emitted by the audit stage.
"""

from .events import ClientInfo, EventSeverity, EventType, RequestInfo, SecurityEvent

__all__ = [
    "ClientInfo",
    "EventSeverity",
    "EventType",
    "RequestInfo",
    "SecurityEvent",
]
