"""
Request validation and sanitization.

Rejects malformed, oversized and obviously malicious requests, flags
suspicious ones for the audit stage, and entity-encodes markup in the
query string and body before the handler sees them.
"""

import html
import json
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, unquote_plus, urlencode

import structlog

from ..config import SanitizationSettings
from .exceptions import ReqShieldException, ValidationFailure
from .patterns import PatternMatcher
from .stage import SecurityContext, SecurityStage

logger = structlog.get_logger(__name__)

SUSPICIOUS_HEADER = "x-suspicious-request"
SUSPICIOUS_REASON_HEADER = "x-suspicious-reason"
MARKER_HEADERS = (SUSPICIOUS_HEADER, SUSPICIOUS_REASON_HEADER)

JSON_FORMAT = "json"
FORM_FORMAT = "form"


def sanitize_string(value: str) -> str:
    """Drop null bytes and HTML-entity-encode ``& < > " '``."""
    return html.escape(value.replace("\x00", ""), quote=True)


def sanitize_value(value: Any, max_depth: int = 10, depth: int = 0) -> Any:
    """
    Recursively sanitize string keys and leaves.

    Containers nested deeper than ``max_depth`` are replaced by empty
    containers of the same kind. Non-string scalars pass through.

    Args:
        value: Parsed JSON or form value to encode
        max_depth: Deepest container level kept
        depth: Nesting level of ``value``

    Returns:
        A new value with HTML-significant characters entity-encoded
    """
    if isinstance(value, str):
        return sanitize_string(value)

    if isinstance(value, dict):
        if depth > max_depth:
            logger.warning("Object depth limit exceeded during sanitization", depth=depth)
            return {}
        return {
            (sanitize_string(k) if isinstance(k, str) else k): sanitize_value(v, max_depth, depth + 1)
            for k, v in value.items()
        }

    if isinstance(value, list):
        if depth > max_depth:
            logger.warning("Object depth limit exceeded during sanitization", depth=depth)
            return []
        return [sanitize_value(item, max_depth, depth + 1) for item in value]

    return value


def form_pairs_to_dict(pairs: List[Tuple[str, str]]) -> Dict[str, Any]:
    """Collapse form pairs; repeated keys become lists."""
    result: Dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            existing = result[key]
            if isinstance(existing, list):
                existing.append(value)
            else:
                result[key] = [existing, value]
        else:
            result[key] = value
    return result


def media_type(content_type: Optional[str]) -> str:
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def body_format(content_type: Optional[str]) -> Optional[str]:
    """Return the parsed body format for ``content_type``, or ``None`` for opaque bodies."""
    kind = media_type(content_type)
    if kind == "application/json" or kind.endswith("+json"):
        return JSON_FORMAT
    if kind == "application/x-www-form-urlencoded":
        return FORM_FORMAT
    return None


class RequestSanitizer(SecurityStage):
    """
    Ordered request validation followed by sanitization.

    Validation order:
    1. method allowlist
    2. raw URL length
    3. decoded URL blocking patterns, decoded path markup patterns
    4. URL suspicious patterns (flag)
    5. serialized header size, blocking and markup patterns; suspicious (flag)
    6. user-agent scanner signatures (flag)
    7. body size; JSON and form bodies also blocking patterns, suspicious (flag)
    """

    name = "sanitizer"

    def __init__(
        self,
        settings: SanitizationSettings,
        matcher: Optional[PatternMatcher] = None,
        logger: Any = None,
    ) -> None:
        self.settings = settings
        self.matcher = matcher or PatternMatcher.from_settings(settings)
        self.allowed_methods = set(settings.allowed_methods)
        self.logger = logger if logger is not None else structlog.get_logger(__name__)

    async def decorate_request(self, ctx: SecurityContext) -> None:
        self._strip_markers(ctx)

        try:
            self.validate(ctx)
            self.sanitize(ctx)
        except ReqShieldException:
            raise
        except Exception as e:
            self.logger.error(
                "Request sanitization error",
                path=ctx.path,
                method=ctx.method,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ValidationFailure("Request sanitization failed", details={"error": type(e).__name__}) from e

        if ctx.suspicious:
            ctx.headers[SUSPICIOUS_HEADER] = "true"
            ctx.headers[SUSPICIOUS_REASON_HEADER] = ", ".join(ctx.suspicious_reasons)
            ctx.headers_modified = True

    def _strip_markers(self, ctx: SecurityContext) -> None:
        for name in MARKER_HEADERS:
            if ctx.headers.pop(name, None) is not None:
                ctx.headers_modified = True

    def _reject(self, ctx: SecurityContext, reason: str, **details: Any) -> ValidationFailure:
        self.logger.warning(
            "Request rejected by sanitizer",
            path=ctx.path,
            method=ctx.method,
            client=ctx.client_key,
            reason=reason,
            **details,
        )
        return ValidationFailure(f"Request rejected: {reason}", details={"reason": reason, **details})

    def _flag(self, ctx: SecurityContext, reason: str, **details: Any) -> None:
        ctx.flag_suspicious(reason)
        self.logger.warning(
            "Suspicious request detected",
            path=ctx.path,
            method=ctx.method,
            client=ctx.client_key,
            reason=reason,
            **details,
        )

    def validate(self, ctx: SecurityContext) -> None:
        """Raise ``ValidationFailure`` on the first failed check."""
        if ctx.method.upper() not in self.allowed_methods:
            raise self._reject(ctx, "method_not_allowed", method_received=ctx.method)

        if len(ctx.raw_url) > self.settings.max_url_length:
            raise self._reject(ctx, "url_too_long", length=len(ctx.raw_url))

        decoded_url = unquote_plus(ctx.raw_url)
        pattern = self.matcher.find_blocking(decoded_url)
        if pattern:
            raise self._reject(ctx, "malicious_url", pattern=pattern)

        pattern = self.matcher.find_markup(ctx.path)
        if pattern:
            raise self._reject(ctx, "markup_in_path", pattern=pattern)

        pattern = self.matcher.find_suspicious(decoded_url)
        if pattern:
            self._flag(ctx, "suspicious_url", pattern=pattern)

        self._validate_headers(ctx)

        if self.matcher.is_scanner(ctx.headers.get("user-agent")):
            self._flag(ctx, "scanner_user_agent", user_agent=ctx.headers.get("user-agent"))

        self._validate_body(ctx)

    def _validate_headers(self, ctx: SecurityContext) -> None:
        serialized = json.dumps(ctx.headers)
        size = len(serialized.encode("utf-8"))
        if size > self.settings.max_header_size:
            raise self._reject(ctx, "headers_too_large", size=size)

        pattern = self.matcher.find_blocking(serialized) or self.matcher.find_markup(serialized)
        if pattern:
            raise self._reject(ctx, "malicious_headers", pattern=pattern)

        pattern = self.matcher.find_suspicious(serialized)
        if pattern:
            self._flag(ctx, "suspicious_headers", pattern=pattern)

    def _validate_body(self, ctx: SecurityContext) -> None:
        if ctx.body_too_large or len(ctx.body) > self.settings.max_body_size:
            raise self._reject(ctx, "body_too_large", size=len(ctx.body))

        # Opaque bodies are size-checked only
        if not ctx.body or body_format(ctx.headers.get("content-type")) is None:
            return

        text = ctx.body.decode("utf-8", errors="replace")
        pattern = self.matcher.find_blocking(text)
        if pattern:
            raise self._reject(ctx, "malicious_body", pattern=pattern)

        pattern = self.matcher.find_suspicious(text)
        if pattern:
            self._flag(ctx, "suspicious_body", pattern=pattern)

    def sanitize(self, ctx: SecurityContext) -> None:
        """Entity-encode the query and any JSON or form body in place."""
        max_depth = self.settings.max_depth

        if ctx.query:
            sanitized_query = [(sanitize_string(k), sanitize_string(v)) for k, v in ctx.query]
            if sanitized_query != ctx.query:
                ctx.query = sanitized_query
                ctx.query_modified = True

        if not ctx.body:
            return

        kind = body_format(ctx.headers.get("content-type"))
        if kind == JSON_FORMAT:
            try:
                parsed = json.loads(ctx.body)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise self._reject(ctx, "malformed_json") from e
            sanitized = sanitize_value(parsed, max_depth)
            ctx.parsed_body = sanitized
            ctx.body_format = JSON_FORMAT
            if sanitized != parsed:
                ctx.body = json.dumps(sanitized).encode("utf-8")
                ctx.body_modified = True

        elif kind == FORM_FORMAT:
            pairs = parse_qsl(ctx.body.decode("utf-8", errors="replace"), keep_blank_values=True)
            sanitized_pairs = [(sanitize_string(k), sanitize_string(v)) for k, v in pairs]
            ctx.parsed_body = form_pairs_to_dict(sanitized_pairs)
            ctx.body_format = FORM_FORMAT
            if sanitized_pairs != pairs:
                ctx.body = urlencode(sanitized_pairs).encode("utf-8")
                ctx.body_modified = True
