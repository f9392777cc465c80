"""
Tests for audit event classification, selection and log levels.
"""

import json

import pytest
from pydantic import ValidationError
from starlette.datastructures import MutableHeaders

from reqshield.config import AuditSettings
from reqshield.core.audit import SecurityAuditLogger, classify, detect_suspicious
from reqshield.core.stage import ResponseMeta
from reqshield.models.events import EventSeverity, EventType

from conftest import FakeClock, RecordingLogger

AUTH_FRAGMENTS = AuditSettings().auth_fragments


@pytest.fixture
def auditor(clock: FakeClock, recording_logger: RecordingLogger) -> SecurityAuditLogger:
    return SecurityAuditLogger(AuditSettings(), clock=clock, logger=recording_logger)


def response(status_code: int) -> ResponseMeta:
    return ResponseMeta(status_code=status_code, headers=MutableHeaders())


class TestClassification:
    """Base category then status overrides."""

    @pytest.mark.parametrize(
        "path,status,suspicious,expected",
        [
            ("/page", 200, False, (EventType.ACCESS, EventSeverity.LOW)),
            ("/auth/login", 200, False, (EventType.AUTHENTICATION, EventSeverity.LOW)),
            ("/page", 200, True, (EventType.SUSPICIOUS_ACTIVITY, EventSeverity.MEDIUM)),
            ("/page", 401, False, (EventType.AUTHENTICATION, EventSeverity.MEDIUM)),
            ("/page", 403, True, (EventType.AUTHORIZATION, EventSeverity.MEDIUM)),
            ("/page", 429, False, (EventType.RATE_LIMIT, EventSeverity.HIGH)),
            ("/page", 500, False, (EventType.ACCESS, EventSeverity.HIGH)),
            ("/page", 503, True, (EventType.SUSPICIOUS_ACTIVITY, EventSeverity.HIGH)),
            ("/page", 404, True, (EventType.VALIDATION_ERROR, EventSeverity.LOW)),
            ("/page", 400, False, (EventType.VALIDATION_ERROR, EventSeverity.LOW)),
        ],
    )
    def test_classify(self, path: str, status: int, suspicious: bool, expected) -> None:
        assert classify(path, status, suspicious, AUTH_FRAGMENTS) == expected


class TestSelection:
    """Which requests produce an event."""

    @pytest.mark.parametrize("path", ["/auth/x", "/login", "/logout", "/admin/users", "/api/items", "/api"])
    def test_always_audited_paths(self, auditor: SecurityAuditLogger, path: str) -> None:
        assert auditor.always_audited(path)

    @pytest.mark.parametrize("path", ["/", "/page", "/apiary"])
    def test_ordinary_paths(self, auditor: SecurityAuditLogger, path: str) -> None:
        assert not auditor.always_audited(path)

    @pytest.mark.asyncio
    async def test_ordinary_success_not_logged(self, auditor: SecurityAuditLogger, make_context, recording_logger: RecordingLogger) -> None:
        await auditor.finalize_response(make_context(path="/page"), response(200))
        assert recording_logger.security_events() == []

    @pytest.mark.asyncio
    async def test_failure_logged(self, auditor: SecurityAuditLogger, make_context, recording_logger: RecordingLogger) -> None:
        await auditor.finalize_response(make_context(path="/page"), response(404))
        [(level, event, fields)] = recording_logger.security_events()
        assert level == "info"
        assert event == "Security event: validation_error"
        assert fields["security_event"]["details"]["status_code"] == 404

    @pytest.mark.asyncio
    async def test_suspicious_logged_with_reasons(self, auditor: SecurityAuditLogger, make_context, recording_logger: RecordingLogger) -> None:
        ctx = make_context(path="/page")
        ctx.flag_suspicious("scanner_user_agent")
        await auditor.finalize_response(ctx, response(200))

        [(level, event, fields)] = recording_logger.security_events()
        assert level == "warning"
        assert fields["type"] == "suspicious_activity"
        assert fields["security_event"]["details"]["reasons"] == ["scanner_user_agent"]


class TestEventContent:
    """Event fields and redaction."""

    @pytest.mark.asyncio
    async def test_rate_limit_event_logged_as_error(self, auditor: SecurityAuditLogger, make_context, recording_logger: RecordingLogger) -> None:
        await auditor.finalize_response(make_context(path="/page"), response(429))
        [(level, event, fields)] = recording_logger.security_events()
        assert level == "error"
        assert fields["severity"] == "high"

    @pytest.mark.asyncio
    async def test_event_is_redacted(self, auditor: SecurityAuditLogger, make_context, recording_logger: RecordingLogger, clock: FakeClock) -> None:
        ctx = make_context(
            method="POST",
            path="/api/auth/login",
            query="next=/home&api_key=k-123",
            headers={
                "authorization": "Bearer top-secret",
                "x-forwarded-for": "198.51.100.4, 10.0.0.1",
                "x-session-id": "sess-1",
            },
        )
        ctx.parsed_body = {"username": "alice", "PassWord": "hunter2", "nested": {"deep": {"password": "p"}}}
        clock.advance(25)
        await auditor.finalize_response(ctx, response(401))

        [(level, event, fields)] = recording_logger.security_events()
        record = fields["security_event"]
        serialized = json.dumps(record)

        assert level == "warning"
        assert "hunter2" not in serialized
        assert "top-secret" not in serialized
        assert "k-123" not in serialized
        assert record["request_info"]["body"]["PassWord"] == "[REDACTED]"
        assert record["request_info"]["body"]["nested"]["deep"]["password"] == "[REDACTED]"
        assert record["request_info"]["body"]["username"] == "alice"
        assert record["request_info"]["query"] == {"next": "/home", "api_key": "[REDACTED]"}
        assert record["client_info"]["ip"] == "198.51.100.4"
        assert record["details"]["duration_ms"] == 25
        assert record["timestamp"] == clock.now

    @pytest.mark.asyncio
    async def test_successful_auth_marked(self, auditor: SecurityAuditLogger, make_context, recording_logger: RecordingLogger) -> None:
        await auditor.finalize_response(make_context(path="/auth/login"), response(200))
        [(level, event, fields)] = recording_logger.security_events()
        assert fields["type"] == "authentication"
        assert fields["security_event"]["details"]["success"] is True


class TestNeverRaises:
    """Logger faults never escape the audit stage."""

    @pytest.mark.asyncio
    async def test_broken_logger_swallowed(self, clock: FakeClock, make_context) -> None:
        class ExplodingLogger:
            def __getattr__(self, name):
                def explode(*args, **kwargs):
                    raise RuntimeError("sink unavailable")
                return explode

        auditor = SecurityAuditLogger(AuditSettings(), clock=clock, logger=ExplodingLogger())
        await auditor.finalize_response(make_context(path="/api/items"), response(500))

    @pytest.mark.asyncio
    async def test_disabled_auditor_logs_nothing(self, clock: FakeClock, make_context, recording_logger: RecordingLogger) -> None:
        auditor = SecurityAuditLogger(AuditSettings(enabled=False), clock=clock, logger=recording_logger)
        await auditor.finalize_response(make_context(path="/api/items"), response(500))
        assert recording_logger.records == []


class TestSuspiciousActivityHeuristics:
    """Request-shape checks flagged in the decorate phase."""

    def test_clean_request(self, make_context) -> None:
        ctx = make_context(method="POST", headers={"content-type": "application/json"})
        assert detect_suspicious(ctx, AuditSettings()) == []

    def test_post_without_content_type(self, make_context) -> None:
        assert detect_suspicious(make_context(method="POST"), AuditSettings()) == ["post_without_content_type"]
        assert detect_suspicious(make_context(method="GET"), AuditSettings()) == []

    def test_post_without_content_type_can_be_disabled(self, make_context) -> None:
        settings = AuditSettings(flag_post_without_content_type=False)
        assert detect_suspicious(make_context(method="POST"), settings) == []

    def test_forwarding_chain_longer_than_limit(self, make_context) -> None:
        three_hops = make_context(headers={"x-forwarded-for": "1.1.1.1, 2.2.2.2, 3.3.3.3"})
        four_hops = make_context(headers={"x-forwarded-for": "1.1.1.1, 2.2.2.2, 3.3.3.3, 4.4.4.4"})

        assert detect_suspicious(three_hops, AuditSettings()) == []
        assert detect_suspicious(four_hops, AuditSettings()) == ["forwarding_chain_too_long"]

    @pytest.mark.parametrize("header", ["x-cluster-client-ip", "x-forwarded-host"])
    def test_spoofable_headers(self, make_context, header: str) -> None:
        ctx = make_context(headers={header: "10.9.8.7"})
        assert detect_suspicious(ctx, AuditSettings()) == [f"spoofable_header:{header}"]

    def test_real_ip_matching_peer_not_flagged(self, make_context) -> None:
        matching = make_context(headers={"x-real-ip": "203.0.113.7"}, client_host="203.0.113.7")
        differing = make_context(headers={"x-real-ip": "198.51.100.1"}, client_host="203.0.113.7")

        assert detect_suspicious(matching, AuditSettings()) == []
        assert detect_suspicious(differing, AuditSettings()) == ["spoofable_header:x-real-ip"]

    @pytest.mark.parametrize("agent", ["Generic-Scanner/1.0", "MyBot webcrawler 2.1"])
    def test_suspicious_user_agents(self, auditor: SecurityAuditLogger, make_context, agent: str) -> None:
        ctx = make_context(headers={"user-agent": agent})
        assert detect_suspicious(ctx, auditor.settings, auditor.agent_patterns) == ["suspicious_user_agent"]

    def test_browser_user_agent_not_flagged(self, auditor: SecurityAuditLogger, make_context) -> None:
        ctx = make_context(headers={"user-agent": "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0"})
        assert detect_suspicious(ctx, auditor.settings, auditor.agent_patterns) == []

    def test_invalid_user_agent_pattern_rejected(self) -> None:
        with pytest.raises(ValidationError, match="Invalid pattern"):
            AuditSettings(suspicious_user_agents=["(unclosed"])

    @pytest.mark.asyncio
    async def test_decorate_flags_and_event_carries_reasons(
        self,
        auditor: SecurityAuditLogger,
        make_context,
        recording_logger: RecordingLogger,
    ) -> None:
        ctx = make_context(method="POST", path="/page", headers={"x-forwarded-host": "evil.example"})
        await auditor.decorate_request(ctx)

        assert ctx.suspicious_reasons == ["post_without_content_type", "spoofable_header:x-forwarded-host"]
        [(level, event, fields)] = recording_logger.find("Suspicious request detected")
        assert level == "warning"

        await auditor.finalize_response(ctx, response(200))
        [(level, event, fields)] = recording_logger.security_events()
        assert fields["type"] == "suspicious_activity"
        assert fields["security_event"]["details"]["reasons"] == [
            "post_without_content_type",
            "spoofable_header:x-forwarded-host",
        ]

    @pytest.mark.asyncio
    async def test_disabled_auditor_does_not_flag(self, clock: FakeClock, make_context) -> None:
        auditor = SecurityAuditLogger(AuditSettings(enabled=False), clock=clock)
        ctx = make_context(method="POST")
        await auditor.decorate_request(ctx)
        assert not ctx.suspicious
