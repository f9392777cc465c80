"""
Per-request context and the two-phase stage contract.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from starlette.datastructures import MutableHeaders

from .client import UNKNOWN_CLIENT

QueryItems = List[Tuple[str, str]]


@dataclass
class SecurityContext:
    """
    Everything the stages know about one request.

    ``headers`` holds lower-cased names. ``state`` is exposed to the handler
    as ``request.state``; ``stage_data`` is private to the stages. Stages
    mutate ``query``, ``parsed_body`` and ``headers`` in place and the
    middleware writes the result back into the ASGI scope before the
    handler runs.
    """

    method: str
    path: str
    raw_url: str
    query_string: str
    headers: Dict[str, str]
    query: QueryItems = field(default_factory=list)
    body: bytes = b""
    body_too_large: bool = False
    client_host: Optional[str] = None
    client_key: str = UNKNOWN_CLIENT
    started_at: int = 0
    parsed_body: Any = None
    body_format: Optional[str] = None
    suspicious_reasons: List[str] = field(default_factory=list)
    state: Dict[str, Any] = field(default_factory=dict)
    stage_data: Dict[str, Any] = field(default_factory=dict)
    query_modified: bool = False
    body_modified: bool = False
    headers_modified: bool = False

    @property
    def suspicious(self) -> bool:
        return bool(self.suspicious_reasons)

    def flag_suspicious(self, reason: str) -> None:
        if reason not in self.suspicious_reasons:
            self.suspicious_reasons.append(reason)


@dataclass
class ResponseMeta:
    """Status and mutable headers of the outgoing response."""

    status_code: int
    headers: MutableHeaders

    def set_default(self, name: str, value: str) -> None:
        """Set ``name`` unless the handler already did."""
        if name not in self.headers:
            self.headers[name] = value


class SecurityStage:
    """
    Base class for pipeline stages.

    ``decorate_request`` runs before the handler and may raise a
    ``ReqShieldException`` to reject. ``finalize_response`` runs once the
    status is known, for every stage that was entered and did not reject.
    Stages with ``finalize_always`` set are also finalized when an earlier
    stage rejected the request before they were reached.
    """

    name = "stage"
    finalize_always = False

    async def decorate_request(self, ctx: SecurityContext) -> None:
        return None

    async def finalize_response(self, ctx: SecurityContext, response: ResponseMeta) -> None:
        return None
