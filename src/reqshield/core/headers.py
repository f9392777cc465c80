"""
Static response security headers.
"""

from typing import Dict

from ..config import SecurityHeadersSettings
from .patterns import matches_path_prefix
from .stage import ResponseMeta, SecurityContext, SecurityStage

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class SecurityHeaders(SecurityStage):
    """
    Adds security headers in the finalize phase, never overwriting the handler's.

    Rejected requests get the headers too.
    """

    name = "security_headers"
    finalize_always = True

    def __init__(self, settings: SecurityHeadersSettings) -> None:
        self.settings = settings
        self.enabled = settings.enabled

    def _matches(self, path: str, prefixes, fragments=()) -> bool:
        if any(fragment in path for fragment in fragments):
            return True
        return any(matches_path_prefix(path, prefix) for prefix in prefixes)

    def headers_for(self, path: str) -> Dict[str, str]:
        headers = dict(self.settings.headers)
        if self._matches(path, self.settings.no_cache_prefixes, self.settings.no_cache_fragments):
            headers.update(NO_CACHE_HEADERS)
        if self._matches(path, self.settings.hsts_prefixes):
            headers["Strict-Transport-Security"] = self.settings.hsts_value
        return headers

    async def finalize_response(self, ctx: SecurityContext, response: ResponseMeta) -> None:
        if not self.enabled:
            return
        for name, value in self.headers_for(ctx.path).items():
            response.set_default(name, value)
