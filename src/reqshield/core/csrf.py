"""
Double-submit cookie CSRF protection.

Tokens are ``<salt-hex>.<hmac-sha256-hex>`` signed with a secret generated
once per manager. The secret is never persisted, so tokens do not survive a
restart and are not shared between processes.
"""

import hashlib
import hmac
import secrets
from http.cookies import SimpleCookie
from typing import Any, List, Optional

import structlog
from starlette.requests import cookie_parser

from ..config import CsrfSettings
from .exceptions import AuthorizationFailure
from .metrics import MetricsCollector
from .patterns import matches_path_prefix
from .stage import ResponseMeta, SecurityContext, SecurityStage

logger = structlog.get_logger(__name__)


class CsrfTokenManager(SecurityStage):
    """Issues tokens on safe requests and validates them on unsafe ones."""

    name = "csrf"

    def __init__(
        self,
        settings: CsrfSettings,
        metrics: Optional[MetricsCollector] = None,
        logger: Any = None,
        secret: Optional[bytes] = None,
    ) -> None:
        self.settings = settings
        self.enabled = settings.enabled
        self.safe_methods = set(settings.safe_methods)
        self.excluded_paths: List[str] = list(settings.excluded_paths)
        self.metrics = metrics
        self.logger = logger if logger is not None else structlog.get_logger(__name__)
        self._secret = secret if secret is not None else secrets.token_bytes(settings.secret_bytes)

    def _sign(self, salt: str) -> str:
        return hmac.new(self._secret, salt.encode("utf-8"), hashlib.sha256).hexdigest()

    def generate_token(self) -> str:
        salt = secrets.token_hex(self.settings.salt_bytes)
        return f"{salt}.{self._sign(salt)}"

    def verify_signature(self, token: str) -> bool:
        salt, sep, signature = token.partition(".")
        if not sep or not salt or not signature:
            return False
        return hmac.compare_digest(self._sign(salt), signature)

    def check_tokens(self, cookie_token: Optional[str], submitted_token: Optional[str]) -> Optional[str]:
        """
        Compare the cookie token with the submitted one and verify its signature.

        A missing token on either side is always a rejection.

        Args:
            cookie_token: Token from the CSRF cookie
            submitted_token: Token from the header or the form or JSON field

        Returns:
            ``None`` when the pair is valid, else the rejection reason
        """
        if not cookie_token:
            return "missing_cookie_token"
        if not submitted_token:
            return "missing_submitted_token"
        if not hmac.compare_digest(cookie_token.encode("utf-8"), submitted_token.encode("utf-8")):
            return "token_mismatch"
        if not self.verify_signature(submitted_token):
            return "invalid_signature"
        return None

    def is_excluded(self, path: str) -> bool:
        return any(matches_path_prefix(path, prefix) for prefix in self.excluded_paths)

    def submitted_token(self, ctx: SecurityContext) -> Optional[str]:
        """Header first, then the form or JSON body field."""
        token = ctx.headers.get(self.settings.header_name.lower())
        if token:
            return token

        if isinstance(ctx.parsed_body, dict):
            value = ctx.parsed_body.get(self.settings.form_field)
            if isinstance(value, str):
                return value
        return None

    def cookie_token(self, ctx: SecurityContext) -> Optional[str]:
        cookies = cookie_parser(ctx.headers.get("cookie", ""))
        return cookies.get(self.settings.cookie_name) or None

    async def decorate_request(self, ctx: SecurityContext) -> None:
        if not self.enabled or self.is_excluded(ctx.path):
            return

        if ctx.method.upper() in self.safe_methods:
            token = self.generate_token()
            ctx.state["csrf_token"] = token
            ctx.stage_data["csrf_token"] = token
            if self.metrics:
                self.metrics.record_csrf_token_issued()
            return

        try:
            reason = self.check_tokens(self.cookie_token(ctx), self.submitted_token(ctx))
        except Exception as e:
            self.logger.error(
                "CSRF validation error",
                path=ctx.path,
                error=str(e),
                error_type=type(e).__name__,
            )
            reason = "validation_error"

        if reason is not None:
            self.logger.warning(
                "CSRF token validation failed",
                path=ctx.path,
                method=ctx.method,
                client=ctx.client_key,
                reason=reason,
            )
            raise AuthorizationFailure(details={"reason": reason})

    def build_cookie(self, token: str) -> str:
        cookie: SimpleCookie = SimpleCookie()
        name = self.settings.cookie_name
        cookie[name] = token
        cookie[name]["path"] = "/"
        cookie[name]["samesite"] = self.settings.cookie_same_site
        if self.settings.cookie_http_only:
            cookie[name]["httponly"] = True
        if self.settings.cookie_secure:
            cookie[name]["secure"] = True
        return cookie.output(header="").strip()

    async def finalize_response(self, ctx: SecurityContext, response: ResponseMeta) -> None:
        token = ctx.stage_data.get("csrf_token")
        if token:
            response.headers.append("set-cookie", self.build_cookie(token))
