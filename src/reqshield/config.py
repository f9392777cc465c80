"""
Configuration management for the security pipeline.

Uses Pydantic Settings for environment variable handling and validation,
with an optional ``config.yaml`` providing defaults that environment
variables override.
"""

import json
import os
import re
from functools import lru_cache
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from typing_extensions import Annotated

CountMode = Literal["all", "failed", "successful"]

StringList = Annotated[List[str], NoDecode]


def load_config_file(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from YAML file."""
    if config_path is None:
        config_path = os.environ.get("REQSHIELD_CONFIG_FILE")

    if config_path is None:
        possible_paths = [
            "config.yaml",
            "../../config.yaml",
        ]
        for path in possible_paths:
            if os.path.exists(path):
                config_path = path
                break
        else:
            return {}

    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            return yaml.safe_load(f) or {}
    return {}


def normalize_string_list(value: Any, default: List[str]) -> List[str]:
    """
    Normalize a directive into an ordered list of strings.

    Directives may arrive absent (``None``), as a scalar, as a JSON-encoded
    list (environment variables) or as a real sequence.
    """
    if value is None:
        return list(default)
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith("["):
            try:
                decoded = json.loads(stripped)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON list: {e.msg}") from e
            return normalize_string_list(decoded, default)
        return [stripped] if stripped else []
    if isinstance(value, (list, tuple, set, frozenset)):
        return [str(item) for item in value if item is not None]
    return [str(value)]


class _DirectiveSettings(BaseSettings):
    """Base class normalizing every list-of-strings field before validation."""

    @field_validator("*", mode="before")
    @classmethod
    def normalize_directives(cls, v: Any, info: ValidationInfo) -> Any:
        field = cls.model_fields.get(info.field_name or "")
        if field is None or field.annotation != List[str]:
            return v
        default = field.get_default(call_default_factory=True) or []
        return normalize_string_list(v, default)


class RateLimitPolicySettings(BaseModel):
    """A single fixed-window rate-limit policy."""

    window_ms: int = Field(gt=0, description="Window length in milliseconds")
    max_requests: int = Field(gt=0, description="Counted requests allowed per window")
    block_duration_ms: int = Field(gt=0, description="Block length once the limit is exceeded")
    count: CountMode = Field(default="all", description="Which responses count toward the limit")
    key_prefix: str = Field(default="default", min_length=1, description="Namespace for the client key")


def _default_policies() -> Dict[str, RateLimitPolicySettings]:
    return {
        "/api/auth": RateLimitPolicySettings(
            window_ms=15 * 60 * 1000,
            max_requests=5,
            block_duration_ms=30 * 60 * 1000,
            count="all",
            key_prefix="auth",
        ),
        "/api": RateLimitPolicySettings(
            window_ms=60 * 1000,
            max_requests=100,
            block_duration_ms=5 * 60 * 1000,
            count="failed",
            key_prefix="api",
        ),
        "default": RateLimitPolicySettings(
            window_ms=60 * 1000,
            max_requests=60,
            block_duration_ms=2 * 60 * 1000,
            count="failed",
            key_prefix="default",
        ),
    }


class RateLimitSettings(BaseSettings):
    """Rate limiting configuration."""

    enabled: bool = Field(default=True, description="Enable rate limiting")
    cleanup_interval_seconds: float = Field(default=300.0, gt=0, description="Expired entry sweep interval")
    policies: Annotated[Dict[str, RateLimitPolicySettings], NoDecode] = Field(
        default_factory=_default_policies,
        description="Policies keyed by path prefix; 'default' is the fallback",
    )

    @field_validator("policies", mode="before")
    @classmethod
    def parse_policies(cls, v: Any) -> Any:
        """Parse policies from a JSON string if needed."""
        if v is None:
            return _default_policies()
        if isinstance(v, str):
            try:
                v = json.loads(v)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid rate limit policies JSON: {e.msg}") from e
        return v

    @field_validator("policies")
    @classmethod
    def require_default_policy(cls, v: Dict[str, RateLimitPolicySettings]) -> Dict[str, RateLimitPolicySettings]:
        if "default" not in v:
            raise ValueError("rate limit policies must include a 'default' entry")
        return v

    model_config = SettingsConfigDict(env_prefix="REQSHIELD_RATE_LIMIT_")


class SanitizationSettings(_DirectiveSettings):
    """Request validation and sanitization configuration."""

    max_body_size: int = Field(default=10 * 1024 * 1024, gt=0, description="Maximum body size in bytes (10MB)")
    max_url_length: int = Field(default=2048, gt=0, description="Maximum URL length")
    max_header_size: int = Field(default=8192, gt=0, description="Maximum serialized header size in bytes")
    max_depth: int = Field(default=10, ge=1, description="Maximum nesting depth walked during sanitization")
    allowed_methods: StringList = Field(
        default=["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"],
        description="Allowed HTTP methods",
    )
    blocking_patterns: StringList = Field(
        default=[
            # SQL injection
            r"\bunion\b(\s+all)?\s+select\b",
            r"'\s*(or|and)\s+'?[\w-]+'?\s*=\s*'?[\w-]+",
            r";\s*(drop|alter|truncate|delete|insert|update|create)\s",
            r"\bdrop\s+(table|database)\b",
            r"\b(xp_cmdshell|sp_executesql)\b",
            # Path traversal
            r"\.\.[/\\]",
            r"%2e%2e(%2f|%5c)",
            # Command injection
            r"(;|\|\||&&|\|)\s*(rm|wget|curl|bash|sh|nc|chmod)\s",
            r"\$\([^)]*\)",
        ],
        description="Patterns rejected anywhere in the request",
    )
    markup_patterns: StringList = Field(
        default=[
            r"<\s*script\b",
            r"<\s*/\s*script\s*>",
            r"<\s*iframe\b",
            r"<\s*(object|embed|applet)\b",
            r"javascript\s*:",
            r"vbscript\s*:",
            r"\bon(load|error|click|mouseover|focus|submit)\s*=",
        ],
        description="Markup rejected in the URL path and headers; entity-encoded in query and body",
    )
    suspicious_patterns: StringList = Field(
        default=[
            r"\.(php|asp|aspx|jsp|cgi|pl)(\?|$)",
            r"(wp-admin|phpmyadmin|\.env\b|\.git/)",
        ],
        description="Patterns flagged but not blocked",
    )
    scanner_signatures: StringList = Field(
        default=[
            r"sqlmap|nikto|nmap|masscan|nessus|openvas|w3af|skipfish|burp|owasp|acunetix|zgrab|gobuster|dirbuster",
        ],
        description="User-agent signatures of known scanners",
    )

    @field_validator("blocking_patterns", "markup_patterns", "suspicious_patterns", "scanner_signatures")
    @classmethod
    def validate_patterns(cls, v: List[str]) -> List[str]:
        """Ensure every pattern compiles."""
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid pattern {pattern!r}: {e}") from e
        return v

    @field_validator("allowed_methods")
    @classmethod
    def uppercase_methods(cls, v: List[str]) -> List[str]:
        return [method.upper() for method in v]

    model_config = SettingsConfigDict(env_prefix="REQSHIELD_SANITIZATION_")


class CsrfSettings(_DirectiveSettings):
    """Double-submit cookie CSRF configuration."""

    enabled: bool = Field(default=True, description="Enable CSRF protection")
    cookie_name: str = Field(default="_csrf", description="Cookie holding the token")
    header_name: str = Field(default="x-csrf-token", description="Header carrying the submitted token")
    form_field: str = Field(default="_csrf", description="Form/JSON field carrying the submitted token")
    excluded_paths: StringList = Field(
        default=["/api", "/health", "/metrics"],
        description="Path prefixes skipped entirely (machine-to-machine)",
    )
    safe_methods: StringList = Field(
        default=["GET", "HEAD", "OPTIONS"],
        description="Methods that receive a fresh token instead of validation",
    )
    cookie_secure: bool = Field(default=True)
    cookie_http_only: bool = Field(default=True)
    cookie_same_site: Literal["strict", "lax", "none"] = Field(default="strict")
    secret_bytes: int = Field(default=32, ge=16, description="Length of the process-lifetime HMAC secret")
    salt_bytes: int = Field(default=8, ge=8, description="Length of the per-token random salt")

    @field_validator("safe_methods")
    @classmethod
    def uppercase_methods(cls, v: List[str]) -> List[str]:
        return [method.upper() for method in v]

    model_config = SettingsConfigDict(env_prefix="REQSHIELD_CSRF_")


class AuditSettings(_DirectiveSettings):
    """Security audit logging configuration."""

    enabled: bool = Field(default=True, description="Enable security audit events")
    always_audit_fragments: StringList = Field(
        default=["/auth", "/login", "/logout", "/admin"],
        description="Path fragments that are always audited",
    )
    always_audit_prefixes: StringList = Field(
        default=["/api"],
        description="Path prefixes that are always audited",
    )
    auth_fragments: StringList = Field(
        default=["/auth", "/login", "/logout"],
        description="Path fragments classified as authentication traffic",
    )
    sensitive_terms: StringList = Field(
        default=[
            "password", "passwd", "token", "secret", "key", "auth",
            "credential", "cookie", "api-key", "api_key", "session", "csrf",
        ],
        description="Field/header name fragments whose values are redacted",
    )
    redaction_mask: str = Field(default="[REDACTED]")
    include_body: bool = Field(default=True, description="Include the redacted body in events")
    suspicious_user_agents: StringList = Field(
        default=[r"scanner", r"bot.*crawl"],
        description="User-agent patterns flagged by the audit stage",
    )
    spoofable_headers: StringList = Field(
        default=["x-cluster-client-ip", "x-real-ip", "x-forwarded-host"],
        description="Forwarding headers flagged when they disagree with the peer address",
    )
    max_forwarded_hops: int = Field(default=3, ge=1, description="Longest X-Forwarded-For chain not flagged")
    flag_post_without_content_type: bool = Field(default=True)

    @field_validator("suspicious_user_agents")
    @classmethod
    def validate_user_agent_patterns(cls, v: List[str]) -> List[str]:
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid pattern {pattern!r}: {e}") from e
        return v

    @field_validator("spoofable_headers")
    @classmethod
    def lowercase_headers(cls, v: List[str]) -> List[str]:
        return [header.lower() for header in v]

    model_config = SettingsConfigDict(env_prefix="REQSHIELD_AUDIT_")


class SecurityHeadersSettings(_DirectiveSettings):
    """Static response security headers."""

    enabled: bool = Field(default=True)
    headers: Dict[str, str] = Field(
        default={
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "X-XSS-Protection": "1; mode=block",
            "X-Download-Options": "noopen",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Permissions-Policy": (
                "accelerometer=(), camera=(), geolocation=(), gyroscope=(), "
                "magnetometer=(), microphone=(), payment=(), usb=()"
            ),
        },
        description="Headers added to every response",
    )
    no_cache_prefixes: StringList = Field(default=["/api"])
    no_cache_fragments: StringList = Field(default=["/auth"])
    hsts_prefixes: StringList = Field(default=["/api"])
    hsts_value: str = Field(default="max-age=31536000; includeSubDomains; preload")

    model_config = SettingsConfigDict(env_prefix="REQSHIELD_SECURITY_HEADERS_")


class Settings(BaseSettings):
    """Main application settings."""

    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")
    debug: bool = Field(default=False, description="Diagnostic mode (exposes tracebacks)")
    log_level: str = Field(default="INFO", description="Log level")

    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    sanitization: SanitizationSettings = Field(default_factory=SanitizationSettings)
    csrf: CsrfSettings = Field(default_factory=CsrfSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    security_headers: SecurityHeadersSettings = Field(default_factory=SecurityHeadersSettings)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log_level '{v}'. Must be one of: {valid_levels}")
        return upper

    model_config = SettingsConfigDict(env_prefix="REQSHIELD_", case_sensitive=False)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance with config file and env support."""
    config_data = load_config_file()

    # Config file provides defaults, env vars override
    if config_data:
        _set_env_from_config(config_data)

    return Settings()


SECTION_PREFIXES = {
    "rate_limit": "REQSHIELD_RATE_LIMIT_",
    "sanitization": "REQSHIELD_SANITIZATION_",
    "csrf": "REQSHIELD_CSRF_",
    "audit": "REQSHIELD_AUDIT_",
    "security_headers": "REQSHIELD_SECURITY_HEADERS_",
}


def _env_value(value: Any) -> str:
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _set_env_from_config(config_data: Dict[str, Any]) -> None:
    """Set environment variables from config file if not already set."""
    for key, value in (config_data.get("server") or {}).items():
        env_var = f"REQSHIELD_{key.upper()}"
        if env_var not in os.environ and value is not None:
            os.environ[env_var] = _env_value(value)

    for section, prefix in SECTION_PREFIXES.items():
        for key, value in (config_data.get(section) or {}).items():
            env_var = f"{prefix}{key.upper()}"
            if env_var not in os.environ and value is not None:
                os.environ[env_var] = _env_value(value)


def reload_settings() -> Settings:
    """Reload settings (clears cache)."""
    get_settings.cache_clear()
    return get_settings()
