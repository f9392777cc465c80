"""
Security pipeline orchestration.

Stages run in two phases around the application:
1. decorate: audit -> rate limit -> sanitizer -> CSRF -> headers, stopping at
   the first rejection
2. finalize: every entered stage in reverse order, exactly once, including
   for rejections and unhandled handler errors (finalized as 500)
"""

from typing import Any, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode

import structlog
from starlette.datastructures import MutableHeaders
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ..config import Settings
from .audit import SecurityAuditLogger
from .client import client_key_from_headers
from .clock import Clock, system_clock
from .csrf import CsrfTokenManager
from .exceptions import InternalFault, ReqShieldException
from .headers import SecurityHeaders
from .metrics import MetricsCollector
from .rate_limit import CleanupTask, RateLimiter, RateLimitStore
from .sanitizer import MARKER_HEADERS, RequestSanitizer
from .stage import ResponseMeta, SecurityContext, SecurityStage

logger = structlog.get_logger(__name__)

RawHeaders = List[Tuple[bytes, bytes]]


def decode_headers(raw_headers: RawHeaders) -> dict:
    """Lower-cased header map; repeated headers are joined."""
    headers: dict = {}
    for raw_name, raw_value in raw_headers:
        name = raw_name.decode("latin-1").lower()
        value = raw_value.decode("latin-1")
        if name in headers:
            separator = "; " if name == "cookie" else ", "
            headers[name] = f"{headers[name]}{separator}{value}"
        else:
            headers[name] = value
    return headers


class SecurityPipeline:
    """
    Owns the rate-limit store, the CSRF secret, the stages and the cleanup
    task. One instance per application.
    """

    def __init__(
        self,
        settings: Settings,
        clock: Clock = system_clock,
        metrics: Optional[MetricsCollector] = None,
        logger: Any = None,
        audit_logger: Any = None,
    ) -> None:
        self.settings = settings
        self.clock = clock
        self.metrics = metrics
        self.logger = logger if logger is not None else structlog.get_logger(__name__)

        self.store = RateLimitStore(clock=clock, logger=logger)
        self.audit = SecurityAuditLogger(
            settings.audit,
            clock=clock,
            metrics=metrics,
            logger=audit_logger if audit_logger is not None else logger,
        )
        self.rate_limiter = RateLimiter(settings.rate_limit, self.store, clock=clock, metrics=metrics, logger=logger)
        self.sanitizer = RequestSanitizer(settings.sanitization, logger=logger)
        self.csrf = CsrfTokenManager(settings.csrf, metrics=metrics, logger=logger)
        self.security_headers = SecurityHeaders(settings.security_headers)

        self.stages: List[SecurityStage] = [
            self.audit,
            self.rate_limiter,
            self.sanitizer,
            self.csrf,
            self.security_headers,
        ]
        self.cleanup = CleanupTask(
            self.store,
            interval_seconds=settings.rate_limit.cleanup_interval_seconds,
            metrics=metrics,
        )

    async def start(self) -> None:
        """Start background work (the rate-limit sweep)."""
        if self.settings.rate_limit.enabled:
            await self.cleanup.start()

    async def stop(self) -> None:
        await self.cleanup.stop()

    def build_context(self, scope: Scope, body: bytes = b"", body_too_large: bool = False) -> SecurityContext:
        headers = decode_headers(scope.get("headers") or [])
        path = scope.get("path") or "/"
        raw_path = scope.get("raw_path")
        raw_path_text = raw_path.decode("latin-1") if raw_path else path
        query_string = (scope.get("query_string") or b"").decode("latin-1")
        raw_url = f"{raw_path_text}?{query_string}" if query_string else raw_path_text

        client = scope.get("client")
        client_host = client[0] if client else None

        return SecurityContext(
            method=scope.get("method", "GET").upper(),
            path=path,
            raw_url=raw_url,
            query_string=query_string,
            headers=headers,
            query=parse_qsl(query_string, keep_blank_values=True),
            body=body,
            body_too_large=body_too_large,
            client_host=client_host,
            client_key=client_key_from_headers(headers, client_host),
            started_at=self.clock(),
        )

    def _note_rejection(self, ctx: SecurityContext, stage: SecurityStage, exc: ReqShieldException) -> None:
        ctx.stage_data["rejection"] = {
            "stage": stage.name,
            "status_code": exc.status_code,
            "error_code": exc.error_code,
            **exc.details,
        }
        self.logger.info(
            "Request rejected",
            stage=stage.name,
            status_code=exc.status_code,
            error_code=exc.error_code,
            path=ctx.path,
            method=ctx.method,
        )
        if self.metrics:
            self.metrics.record_rejection(stage.name, exc.status_code)

    async def decorate(self, ctx: SecurityContext, entered: List[SecurityStage]) -> None:
        """
        Run the decorate phase.

        Stages that complete are appended to ``entered``. The stage that
        rejects is not, so it is never finalized.
        """
        for stage in self.stages:
            try:
                await stage.decorate_request(ctx)
            except ReqShieldException as exc:
                self._note_rejection(ctx, stage, exc)
                raise
            except Exception as e:
                self.logger.error(
                    "Security stage failed",
                    stage=stage.name,
                    path=ctx.path,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                fault = InternalFault(
                    f"{stage.name} stage failed",
                    details={"error_type": type(e).__name__},
                )
                self._note_rejection(ctx, stage, fault)
                raise fault from e
            entered.append(stage)

    async def finalize(self, ctx: SecurityContext, entered: List[SecurityStage], response: ResponseMeta) -> None:
        """
        Run the finalize phase over ``entered`` in reverse order.

        ``finalize_always`` stages that a rejection kept from being entered
        run first, so rejected responses still carry their headers.
        """
        rejected = ctx.stage_data.get("rejection", {}).get("stage")
        pending = [
            stage
            for stage in self.stages
            if stage.finalize_always and stage not in entered and stage.name != rejected
        ]

        for stage in list(reversed(pending)) + list(reversed(entered)):
            try:
                await stage.finalize_response(ctx, response)
            except Exception as e:
                self.logger.error(
                    "Security stage finalize failed",
                    stage=stage.name,
                    path=ctx.path,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        if self.metrics:
            self.metrics.record_request(
                ctx.method,
                response.status_code,
                (self.clock() - ctx.started_at) / 1000,
            )


def apply_context(scope: Scope, ctx: SecurityContext) -> Scope:
    """Return a copy of ``scope`` carrying the sanitized request."""
    scope = dict(scope)

    if ctx.query_modified:
        scope["query_string"] = urlencode(ctx.query).encode("latin-1")

    if ctx.headers_modified or ctx.body_modified:
        dropped = set(MARKER_HEADERS)
        if ctx.body_modified:
            dropped.add("content-length")
        headers: RawHeaders = [
            (name, value)
            for name, value in scope.get("headers") or []
            if name.decode("latin-1").lower() not in dropped
        ]
        for marker in MARKER_HEADERS:
            if marker in ctx.headers:
                headers.append((marker.encode("latin-1"), ctx.headers[marker].encode("latin-1")))
        if ctx.body_modified:
            headers.append((b"content-length", str(len(ctx.body)).encode("latin-1")))
        scope["headers"] = headers

    if ctx.state:
        state = dict(scope.get("state") or {})
        state.update(ctx.state)
        scope["state"] = state

    return scope


class SecurityPipelineMiddleware:
    """
    Pure ASGI middleware running a ``SecurityPipeline`` around the app.

    The request body is buffered (up to ``max_body_size``) so the stages can
    inspect and rewrite it, then replayed to the application.
    """

    def __init__(self, app: ASGIApp, pipeline: SecurityPipeline) -> None:
        self.app = app
        self.pipeline = pipeline
        self.max_body_size = pipeline.settings.sanitization.max_body_size

    async def _read_body(self, receive: Receive) -> Tuple[bytes, bool]:
        chunks: List[bytes] = []
        size = 0
        while True:
            message = await receive()
            if message["type"] != "http.request":
                break
            chunk = message.get("body", b"")
            size += len(chunk)
            if size > self.max_body_size:
                return b"".join(chunks), True
            chunks.append(chunk)
            if not message.get("more_body", False):
                break
        return b"".join(chunks), False

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        body, too_large = await self._read_body(receive)
        ctx = self.pipeline.build_context(scope, body, too_large)
        entered: List[SecurityStage] = []
        finalized = False

        async def send_wrapper(message: Message) -> None:
            nonlocal finalized
            if message["type"] == "http.response.start" and not finalized:
                finalized = True
                message.setdefault("headers", [])
                meta = ResponseMeta(status_code=message["status"], headers=MutableHeaders(scope=message))
                await self.pipeline.finalize(ctx, entered, meta)
            await send(message)

        try:
            await self.pipeline.decorate(ctx, entered)
        except ReqShieldException as exc:
            response = JSONResponse(
                exc.to_response_body(),
                status_code=exc.status_code,
                headers=exc.headers,
            )
            await response(scope, receive, send_wrapper)
            return

        body_sent = False

        async def replay_receive() -> Message:
            nonlocal body_sent
            if not body_sent:
                body_sent = True
                return {"type": "http.request", "body": ctx.body, "more_body": False}
            return await receive()

        try:
            await self.app(apply_context(scope, ctx), replay_receive, send_wrapper)
        except Exception:
            if not finalized:
                finalized = True
                await self.pipeline.finalize(ctx, entered, ResponseMeta(status_code=500, headers=MutableHeaders()))
            raise
