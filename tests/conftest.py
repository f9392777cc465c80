"""
Pytest configuration and shared fixtures.

Contains common test fixtures and setup for all test modules.
"""

import os
from pathlib import Path

# Keep the repository config.yaml out of the test settings
os.environ["REQSHIELD_CONFIG_FILE"] = str(Path(__file__).parent / "no-such-config.yaml")

from typing import Any, Callable, Dict, Generator, List, Optional, Tuple
from urllib.parse import parse_qsl

import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from reqshield.config import (
    AuditSettings,
    CsrfSettings,
    RateLimitPolicySettings,
    RateLimitSettings,
    SanitizationSettings,
    SecurityHeadersSettings,
    Settings,
)
from reqshield.core.client import client_key_from_headers
from reqshield.core.metrics import MetricsCollector
from reqshield.core.pipeline import SecurityPipeline
from reqshield.core.stage import SecurityContext
from reqshield.main import create_app


class FakeClock:
    """Deterministic epoch-millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingLogger:
    """Captures structlog-style calls as (level, event, fields)."""

    def __init__(self) -> None:
        self.records: List[Tuple[str, str, Dict[str, Any]]] = []

    def _log(self, level: str, event: str, **kwargs: Any) -> None:
        self.records.append((level, event, kwargs))

    def debug(self, event: str, **kwargs: Any) -> None:
        self._log("debug", event, **kwargs)

    def info(self, event: str, **kwargs: Any) -> None:
        self._log("info", event, **kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._log("warning", event, **kwargs)

    def error(self, event: str, **kwargs: Any) -> None:
        self._log("error", event, **kwargs)

    def find(self, prefix: str) -> List[Tuple[str, str, Dict[str, Any]]]:
        return [record for record in self.records if record[1].startswith(prefix)]

    def security_events(self) -> List[Tuple[str, str, Dict[str, Any]]]:
        return self.find("Security event:")


def policy(window_ms: int = 1000, max_requests: int = 3, block_duration_ms: int = 5000, **kwargs: Any) -> RateLimitPolicySettings:
    return RateLimitPolicySettings(
        window_ms=window_ms,
        max_requests=max_requests,
        block_duration_ms=block_duration_ms,
        **kwargs,
    )


def make_settings(
    policies: Optional[Dict[str, RateLimitPolicySettings]] = None,
    debug: bool = False,
    sanitization: Optional[SanitizationSettings] = None,
    csrf: Optional[CsrfSettings] = None,
    audit: Optional[AuditSettings] = None,
) -> Settings:
    """Settings with generous limits unless ``policies`` says otherwise."""
    if policies is None:
        policies = {"default": policy(window_ms=60_000, max_requests=1000, block_duration_ms=60_000)}
    return Settings(
        debug=debug,
        log_level="DEBUG",
        rate_limit=RateLimitSettings(policies=policies),
        sanitization=sanitization or SanitizationSettings(),
        csrf=csrf or CsrfSettings(),
        audit=audit or AuditSettings(),
        security_headers=SecurityHeadersSettings(),
    )


def add_test_routes(app: FastAPI) -> None:
    """Handlers standing in for a real application behind the pipeline."""

    @app.get("/form")
    async def form_page(request: Request) -> Dict[str, Any]:
        return {"csrf_token": getattr(request.state, "csrf_token", None)}

    @app.post("/form")
    async def form_submit(request: Request) -> Dict[str, Any]:
        body = await request.body()
        return {"fields": dict(parse_qsl(body.decode("utf-8")))}

    @app.post("/comments")
    async def create_comment(request: Request) -> Dict[str, Any]:
        return {"received": await request.json()}

    @app.get("/api/items")
    async def list_items(request: Request) -> Dict[str, Any]:
        return {"query": dict(request.query_params), "suspicious": request.headers.get("x-suspicious-request")}

    @app.post("/api/echo")
    async def echo(request: Request) -> Dict[str, Any]:
        return {
            "body": await request.json(),
            "query": dict(request.query_params),
            "content_length": request.headers.get("content-length"),
            "suspicious": request.headers.get("x-suspicious-request"),
            "reason": request.headers.get("x-suspicious-reason"),
        }

    @app.post("/api/upload")
    async def upload(request: Request) -> Dict[str, Any]:
        body = await request.body()
        return {"size": len(body), "content_type": request.headers.get("content-type")}

    @app.post("/api/auth/login")
    async def login(request: Request) -> JSONResponse:
        payload = await request.json()
        if payload.get("password") != "correct-horse":
            return JSONResponse({"detail": "invalid credentials"}, status_code=401)
        return JSONResponse({"detail": "ok"})

    @app.get("/api/fail")
    async def fail() -> JSONResponse:
        return JSONResponse({"detail": "bad input"}, status_code=422)

    @app.get("/boom")
    async def boom() -> Dict[str, Any]:
        raise RuntimeError("handler exploded")

    @app.get("/custom-headers")
    async def custom_headers() -> JSONResponse:
        return JSONResponse({"ok": True}, headers={"X-Frame-Options": "SAMEORIGIN"})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_logger() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def build_client(
    clock: FakeClock,
    recording_logger: RecordingLogger,
) -> Generator[Callable[..., TestClient], None, None]:
    """Factory building a TestClient around an app with the given settings."""
    clients: List[TestClient] = []

    def _build(app_settings: Optional[Settings] = None) -> TestClient:
        app_settings = app_settings or make_settings()
        pipeline = SecurityPipeline(
            app_settings,
            clock=clock,
            metrics=MetricsCollector(),
            logger=recording_logger,
        )
        app = create_app(settings=app_settings, pipeline=pipeline)
        add_test_routes(app)
        client = TestClient(app, raise_server_exceptions=False)
        client.__enter__()
        clients.append(client)
        return client

    yield _build

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(build_client: Callable[..., TestClient]) -> TestClient:
    return build_client()


@pytest.fixture
def make_context(clock: FakeClock) -> Callable[..., SecurityContext]:
    """Build a SecurityContext the way the middleware would."""

    def _make(
        method: str = "GET",
        path: str = "/",
        query: str = "",
        headers: Optional[Dict[str, str]] = None,
        body: bytes = b"",
        client_host: str = "203.0.113.7",
    ) -> SecurityContext:
        header_map = {"user-agent": "pytest-agent", "host": "testserver"}
        header_map.update({k.lower(): v for k, v in (headers or {}).items()})
        return SecurityContext(
            method=method,
            path=path,
            raw_url=f"{path}?{query}" if query else path,
            query_string=query,
            headers=header_map,
            query=parse_qsl(query, keep_blank_values=True),
            body=body,
            client_host=client_host,
            client_key=client_key_from_headers(header_map, client_host),
            started_at=clock(),
        )

    return _make
