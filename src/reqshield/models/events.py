"""
Security event data models.

Events are built per audited request, logged immediately and never
persisted.
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Audit event categories."""

    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    ACCESS = "access"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    RATE_LIMIT = "rate_limit"
    VALIDATION_ERROR = "validation_error"


class EventSeverity(str, Enum):
    """Audit event severities, mapped onto log levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ClientInfo(BaseModel):
    ip: str = Field(description="Resolved client address")
    user_agent: Optional[str] = None
    referer: Optional[str] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None


class RequestInfo(BaseModel):
    """Redacted view of the request."""

    method: str
    url: str
    path: str
    query: Dict[str, Any] = Field(default_factory=dict)
    headers: Dict[str, Any] = Field(default_factory=dict)
    body: Optional[Any] = None


class SecurityEvent(BaseModel):
    """
    A single security audit record.

    ``timestamp`` is epoch milliseconds from the pipeline clock.
    """

    type: EventType
    severity: EventSeverity
    timestamp: int
    client_info: ClientInfo
    request_info: RequestInfo
    details: Dict[str, Any] = Field(default_factory=dict)
