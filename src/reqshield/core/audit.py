"""
Security audit logging.

Emits one structured event per relevant request once its final status is
known. Sensitive header, query and body fields are redacted before the
event reaches the log sink.
"""

import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlencode

import structlog

from ..config import AuditSettings
from ..models.events import ClientInfo, EventSeverity, EventType, RequestInfo, SecurityEvent
from .client import client_address
from .clock import Clock, system_clock
from .metrics import MetricsCollector
from .patterns import matches_path_prefix
from .sanitizer import SUSPICIOUS_REASON_HEADER, form_pairs_to_dict
from .stage import ResponseMeta, SecurityContext, SecurityStage

logger = structlog.get_logger(__name__)

LOG_LEVELS = {
    EventSeverity.CRITICAL: "error",
    EventSeverity.HIGH: "error",
    EventSeverity.MEDIUM: "warning",
    EventSeverity.LOW: "info",
}


def is_sensitive_key(key: Any, terms: Iterable[str]) -> bool:
    """Case-insensitive substring match against the sensitive terms."""
    key_lower = str(key).lower()
    return any(term in key_lower for term in terms)


def redact(obj: Any, terms: List[str], mask: str = "[REDACTED]") -> Any:
    """
    Return a copy of ``obj`` with sensitive fields masked.

    Walks nested dicts and lists; the value of any key matching a sensitive
    term is replaced by ``mask`` whatever its type.

    Args:
        obj: Headers, body or any nested structure to redact
        terms: Key fragments marking a field as sensitive
        mask: Replacement for sensitive values

    Returns:
        Redacted copy; ``obj`` itself is left unchanged
    """
    if isinstance(obj, dict):
        masked = {}
        for key, value in obj.items():
            if is_sensitive_key(key, terms):
                masked[key] = mask
            else:
                masked[key] = redact(value, terms, mask)
        return masked

    if isinstance(obj, list):
        return [redact(item, terms, mask) for item in obj]

    return obj


def detect_suspicious(
    ctx: SecurityContext,
    settings: AuditSettings,
    agent_patterns: Sequence["re.Pattern[str]"] = (),
) -> List[str]:
    """
    Request-shape heuristics checked before any other stage runs.

    Args:
        ctx: Context of the incoming request, with its original headers
        settings: Audit configuration holding the heuristic thresholds
        agent_patterns: Compiled ``suspicious_user_agents`` patterns

    Returns:
        Reasons for flagging the request, empty when nothing matched
    """
    reasons: List[str] = []
    headers = ctx.headers

    user_agent = headers.get("user-agent") or ""
    if any(pattern.search(user_agent) for pattern in agent_patterns):
        reasons.append("suspicious_user_agent")

    if settings.flag_post_without_content_type and ctx.method == "POST" and not headers.get("content-type"):
        reasons.append("post_without_content_type")

    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for and len(forwarded_for.split(",")) > settings.max_forwarded_hops:
        reasons.append("forwarding_chain_too_long")

    for header in settings.spoofable_headers:
        value = (headers.get(header) or "").strip()
        if value and value != ctx.client_host:
            reasons.append(f"spoofable_header:{header}")

    return reasons


def classify(path: str, status_code: int, suspicious: bool, auth_fragments: Iterable[str]) -> Tuple[EventType, EventSeverity]:
    """Map a finished request onto an event type and severity."""
    if suspicious:
        event_type, severity = EventType.SUSPICIOUS_ACTIVITY, EventSeverity.MEDIUM
    elif any(fragment in path for fragment in auth_fragments):
        event_type, severity = EventType.AUTHENTICATION, EventSeverity.LOW
    else:
        event_type, severity = EventType.ACCESS, EventSeverity.LOW

    if status_code == 401:
        return EventType.AUTHENTICATION, EventSeverity.MEDIUM
    if status_code == 403:
        return EventType.AUTHORIZATION, EventSeverity.MEDIUM
    if status_code == 429:
        return EventType.RATE_LIMIT, EventSeverity.HIGH
    if status_code >= 500:
        return event_type, EventSeverity.HIGH
    if status_code >= 400:
        return EventType.VALIDATION_ERROR, EventSeverity.LOW

    return event_type, severity


class SecurityAuditLogger(SecurityStage):
    """
    Pipeline stage emitting security events.

    Runs first: it flags request-shape anomalies before the other stages
    see the request, and is finalized last so the event reflects every
    other stage's outcome. Never raises.
    """

    name = "audit"

    def __init__(
        self,
        settings: AuditSettings,
        clock: Clock = system_clock,
        metrics: Optional[MetricsCollector] = None,
        logger: Any = None,
    ) -> None:
        self.settings = settings
        self.enabled = settings.enabled
        self.terms = [term.lower() for term in settings.sensitive_terms]
        self.agent_patterns = [re.compile(pattern, re.IGNORECASE) for pattern in settings.suspicious_user_agents]
        self.clock = clock
        self.metrics = metrics
        self.logger = logger if logger is not None else structlog.get_logger(__name__)

    async def decorate_request(self, ctx: SecurityContext) -> None:
        if not self.enabled:
            return

        try:
            reasons = detect_suspicious(ctx, self.settings, self.agent_patterns)
        except Exception as e:
            logger.error(
                "Suspicious activity check failed",
                path=ctx.path,
                error=str(e),
                error_type=type(e).__name__,
            )
            return

        for reason in reasons:
            ctx.flag_suspicious(reason)
        if reasons:
            self.logger.warning(
                "Suspicious request detected",
                path=ctx.path,
                method=ctx.method,
                client=ctx.client_key,
                reasons=reasons,
            )

    def always_audited(self, path: str) -> bool:
        if any(fragment in path for fragment in self.settings.always_audit_fragments):
            return True
        return any(matches_path_prefix(path, prefix) for prefix in self.settings.always_audit_prefixes)

    def should_audit(self, ctx: SecurityContext, status_code: int) -> bool:
        return self.always_audited(ctx.path) or ctx.suspicious or status_code >= 400

    def redact(self, obj: Any) -> Any:
        return redact(obj, self.terms, self.settings.redaction_mask)

    def redacted_url(self, ctx: SecurityContext) -> str:
        if not ctx.query:
            return ctx.path
        mask = self.settings.redaction_mask
        pairs = [(k, mask if is_sensitive_key(k, self.terms) else v) for k, v in ctx.query]
        return f"{ctx.path}?{urlencode(pairs)}"

    def build_event(self, ctx: SecurityContext, status_code: int) -> SecurityEvent:
        event_type, severity = classify(ctx.path, status_code, ctx.suspicious, self.settings.auth_fragments)
        now = self.clock()

        headers = {k: v for k, v in ctx.headers.items() if k != SUSPICIOUS_REASON_HEADER}
        client_info = ClientInfo(
            ip=client_address(ctx.headers.get("x-forwarded-for"), ctx.headers.get("x-real-ip"), ctx.client_host),
            user_agent=ctx.headers.get("user-agent") or "unknown",
            referer=ctx.headers.get("referer"),
            session_id=ctx.headers.get("x-session-id"),
            user_id=ctx.headers.get("x-user-id"),
        )
        request_info = RequestInfo(
            method=ctx.method,
            url=self.redacted_url(ctx),
            path=ctx.path,
            query=self.redact(form_pairs_to_dict(ctx.query)),
            headers=self.redact(headers),
            body=self.redact(ctx.parsed_body) if self.settings.include_body else None,
        )

        details: Dict[str, Any] = {
            "status_code": status_code,
            "duration_ms": max(0, now - ctx.started_at),
        }
        if ctx.suspicious:
            details["reasons"] = list(ctx.suspicious_reasons)
        rejection = ctx.stage_data.get("rejection")
        if rejection:
            details["rejection"] = rejection
        if event_type == EventType.AUTHENTICATION and status_code < 300:
            details["success"] = True

        return SecurityEvent(
            type=event_type,
            severity=severity,
            timestamp=now,
            client_info=client_info,
            request_info=request_info,
            details=details,
        )

    def log_event(self, event: SecurityEvent) -> None:
        level = LOG_LEVELS.get(event.severity, "info")
        getattr(self.logger, level)(
            f"Security event: {event.type.value}",
            security_event=event.model_dump(mode="json"),
            type=event.type.value,
            severity=event.severity.value,
            client_ip=event.client_info.ip,
            user_agent=event.client_info.user_agent,
            method=event.request_info.method,
            path=event.request_info.path,
        )
        if self.metrics:
            self.metrics.record_security_event(event.type.value, event.severity.value)

    async def finalize_response(self, ctx: SecurityContext, response: ResponseMeta) -> None:
        if not self.enabled:
            return

        try:
            if not self.should_audit(ctx, response.status_code):
                return
            self.log_event(self.build_event(ctx, response.status_code))
        except Exception as e:
            # Module logger, not the injected one
            logger.error(
                "Security audit failed",
                path=ctx.path,
                error=str(e),
                error_type=type(e).__name__,
            )
