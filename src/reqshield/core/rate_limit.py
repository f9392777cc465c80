"""
Fixed-window rate limiting.

Entries live in an in-memory store keyed by ``<key_prefix>:<client key>``.
Every store operation runs without awaiting, so a single update is never
interleaved with another request on the event loop.
"""

import asyncio
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

from ..config import RateLimitSettings
from .clock import Clock, system_clock
from .exceptions import PolicyViolation
from .metrics import MetricsCollector
from .patterns import matches_path_prefix
from .stage import ResponseMeta, SecurityContext, SecurityStage

logger = structlog.get_logger(__name__)

DEFAULT_POLICY = "default"


@dataclass(frozen=True)
class RateLimitPolicy:
    """Immutable policy selected per request by path prefix."""

    name: str
    prefix: Optional[str]
    window_ms: int
    max_requests: int
    block_duration_ms: int
    count_mode: str = "all"
    key_prefix: str = DEFAULT_POLICY

    @property
    def counts_at_entry(self) -> bool:
        """Policies counting every request need no response status."""
        return self.count_mode == "all"

    def should_count(self, status_code: int) -> bool:
        if self.count_mode == "failed":
            return status_code >= 400
        if self.count_mode == "successful":
            return status_code < 400
        return True

    def key_for(self, client_key: str) -> str:
        return f"{self.key_prefix}:{client_key}"


def build_policies(settings: RateLimitSettings) -> List[RateLimitPolicy]:
    """Turn validated settings into policies ordered longest prefix first."""
    policies = []
    for name, policy in settings.policies.items():
        policies.append(
            RateLimitPolicy(
                name=name,
                prefix=None if name == DEFAULT_POLICY else name,
                window_ms=policy.window_ms,
                max_requests=policy.max_requests,
                block_duration_ms=policy.block_duration_ms,
                count_mode=policy.count,
                key_prefix=policy.key_prefix,
            )
        )
    policies.sort(key=lambda p: len(p.prefix or ""), reverse=True)
    return policies


def resolve_policy(policies: List[RateLimitPolicy], path: str) -> RateLimitPolicy:
    """
    Longest path-prefix match, falling back to the default policy.

    ``policies`` must be ordered longest prefix first (see ``build_policies``).
    """
    fallback = None
    for policy in policies:
        if policy.prefix is None:
            fallback = policy
            continue
        if matches_path_prefix(path, policy.prefix):
            return policy
    if fallback is None:
        raise LookupError("no default rate limit policy configured")
    return fallback


@dataclass
class RateLimitEntry:
    count: int
    window_reset_at: int
    blocked: bool = False
    block_until: Optional[int] = None

    def is_blocked_at(self, now: int) -> bool:
        return self.block_until is not None and now < self.block_until

    def is_expired_at(self, now: int) -> bool:
        return self.window_reset_at <= now and not self.is_blocked_at(now)


class RateLimitStore:
    """
    In-memory windowed counters.

    A blocked entry is never incremented while its block lasts, and its
    ``block_until`` always lies beyond the window it was blocked in.
    """

    def __init__(self, clock: Clock = system_clock, logger: Any = None) -> None:
        self.clock = clock
        self.logger = logger if logger is not None else structlog.get_logger(__name__)
        self._entries: Dict[str, RateLimitEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[RateLimitEntry]:
        return self._entries.get(key)

    def is_blocked(self, key: str, policy: RateLimitPolicy) -> bool:
        """
        True while the entry's block lasts.

        An expired window is reset in place before answering.
        """
        entry = self._entries.get(key)
        if entry is None:
            return False

        now = self.clock()
        if entry.is_blocked_at(now):
            return True

        if entry.window_reset_at <= now:
            entry.count = 0
            entry.window_reset_at = now + policy.window_ms
            entry.blocked = False
            entry.block_until = None

        return False

    def record(self, key: str, policy: RateLimitPolicy, should_count: bool = True) -> Optional[RateLimitEntry]:
        """
        Count one request against ``key`` if ``should_count`` holds.

        Exceeding ``max_requests`` blocks the key until the later of
        ``block_duration_ms`` from now and the end of the current window.

        Args:
            key: Client key, already prefixed with the policy namespace
            policy: Resolved policy for the request path
            should_count: Whether this request counts toward the limit

        Returns:
            The current entry, or ``None`` when the key has never been counted
        """
        entry = self._entries.get(key)
        now = self.clock()

        if entry is not None and entry.is_blocked_at(now):
            return entry
        if not should_count:
            return entry

        if entry is None or entry.window_reset_at <= now:
            entry = RateLimitEntry(count=0, window_reset_at=now + policy.window_ms)
            self._entries[key] = entry

        entry.count += 1

        if entry.count > policy.max_requests:
            entry.blocked = True
            entry.block_until = max(now + policy.block_duration_ms, entry.window_reset_at + 1)

            self.logger.warning(
                "Rate limit exceeded",
                key=key,
                policy=policy.name,
                count=entry.count,
                max_requests=policy.max_requests,
                block_until=entry.block_until,
            )

        return entry

    def sweep(self) -> int:
        """Remove entries whose window and block have both expired."""
        now = self.clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired_at(now)]
        for key in expired:
            del self._entries[key]

        if expired:
            self.logger.debug("Cleaned up expired rate limit entries", removed=len(expired))

        return len(expired)

    def clear(self) -> None:
        self._entries.clear()


class RateLimiter(SecurityStage):
    """
    Pipeline stage enforcing per-path rate-limit policies.

    Faults inside the limiter are logged and the request proceeds; only an
    exceeded threshold rejects.
    """

    name = "rate_limit"

    def __init__(
        self,
        settings: RateLimitSettings,
        store: RateLimitStore,
        clock: Clock = system_clock,
        metrics: Optional[MetricsCollector] = None,
        logger: Any = None,
    ) -> None:
        self.enabled = settings.enabled
        self.policies = build_policies(settings)
        self.store = store
        self.clock = clock
        self.metrics = metrics
        self.logger = logger if logger is not None else structlog.get_logger(__name__)

    def resolve_policy(self, path: str) -> RateLimitPolicy:
        return resolve_policy(self.policies, path)

    async def decorate_request(self, ctx: SecurityContext) -> None:
        if not self.enabled:
            return

        try:
            policy = self.resolve_policy(ctx.path)
            key = policy.key_for(ctx.client_key)
            entry = self._check(key, policy)
        except Exception as e:
            self.logger.error(
                "Rate limit check failed",
                path=ctx.path,
                error=str(e),
                error_type=type(e).__name__,
            )
            return

        ctx.stage_data["rate_limit"] = (policy, key)

        if entry is not None and entry.is_blocked_at(self.clock()):
            raise self._violation(ctx, policy, key, entry)

    def _check(self, key: str, policy: RateLimitPolicy) -> Optional[RateLimitEntry]:
        if self.store.is_blocked(key, policy):
            return self.store.get(key)
        if policy.counts_at_entry:
            entry = self.store.record(key, policy, True)
            self._note_block(policy, entry)
            return entry
        return None

    def _note_block(self, policy: RateLimitPolicy, entry: Optional[RateLimitEntry]) -> None:
        # Blocked entries stop counting, so max_requests + 1 is reached exactly once
        if entry is not None and entry.blocked and entry.count == policy.max_requests + 1:
            if self.metrics:
                self.metrics.record_rate_limit_block(policy.name)

    def _violation(
        self,
        ctx: SecurityContext,
        policy: RateLimitPolicy,
        key: str,
        entry: RateLimitEntry,
    ) -> PolicyViolation:
        block_until = entry.block_until or self.clock()
        retry_after = max(1, math.ceil((block_until - self.clock()) / 1000))

        self.logger.warning(
            "Blocked request due to rate limiting",
            path=ctx.path,
            method=ctx.method,
            key=key,
            policy=policy.name,
            retry_after=retry_after,
            user_agent=ctx.headers.get("user-agent"),
        )

        return PolicyViolation(
            message=f"Rate limit exceeded for policy {policy.name}",
            retry_after=retry_after,
            limit=policy.max_requests,
            reset_at=entry.block_until,
            details={"policy": policy.name, "key": key},
        )

    async def finalize_response(self, ctx: SecurityContext, response: ResponseMeta) -> None:
        selected = ctx.stage_data.get("rate_limit")
        if not self.enabled or selected is None:
            return

        policy, key = selected
        try:
            if policy.counts_at_entry:
                entry = self.store.get(key)
            else:
                entry = self.store.record(key, policy, policy.should_count(response.status_code))
                self._note_block(policy, entry)
            self._annotate(response, policy, entry)
        except Exception as e:
            self.logger.error(
                "Rate limit accounting failed",
                path=ctx.path,
                key=key,
                error=str(e),
                error_type=type(e).__name__,
            )

    def _annotate(self, response: ResponseMeta, policy: RateLimitPolicy, entry: Optional[RateLimitEntry]) -> None:
        if entry is None:
            remaining = policy.max_requests
            reset_at = self.clock() + policy.window_ms
        else:
            remaining = max(0, policy.max_requests - entry.count)
            reset_at = entry.window_reset_at

        response.headers["X-RateLimit-Limit"] = str(policy.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Reset"] = str(reset_at)


class CleanupTask:
    """
    Background task sweeping expired rate-limit entries.

    Owned by the pipeline; started and stopped from the app lifespan.
    """

    def __init__(
        self,
        store: RateLimitStore,
        interval_seconds: float = 300.0,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.store = store
        self.interval = interval_seconds
        self.metrics = metrics
        self._task: Optional[asyncio.Task[None]] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the sweep loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run_cleanup_loop())

        logger.info("Rate limit cleanup started", interval_seconds=self.interval)

    async def stop(self) -> None:
        """Cancel the sweep loop and wait for it to finish."""
        if not self._running:
            return

        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Rate limit cleanup stopped")

    def run_once(self) -> int:
        removed = self.store.sweep()
        if self.metrics:
            self.metrics.update_rate_limit_entries(len(self.store))
        return removed

    async def _run_cleanup_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Rate limit cleanup error", error=str(e))
