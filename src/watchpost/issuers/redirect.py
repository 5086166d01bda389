"""Suspicious redirect detector.

The host reports every redirect it performs through ``observe``; the
candidate is kept until the next scheduled pass, which promotes redirects
that leave the site, use ``javascript:``/``data:`` targets, carry code-like
payloads, or bounce through a redirect-style query parameter.
"""

import logging
from typing import Any
from urllib.parse import parse_qs, urlsplit

from watchpost.config import settings
from watchpost.issuers.base import HybridIssuer
from watchpost.models.enums import Severity
from watchpost.models.finding import RawFinding

logger = logging.getLogger(__name__)

_CODE_PATTERNS = (
    "eval(",
    "base64_decode(",
    "gzinflate(",
    "str_rot13(",
    "file_get_contents(",
    "include(",
    "require(",
    "system(",
    "exec(",
    "shell_exec(",
)

_REDIRECT_PARAMS = ("redirect", "url", "goto", "link", "target", "destination", "next", "continue")


class RedirectIssuer(HybridIssuer):
    name = "redirect"
    priority = 9

    def _site_host(self) -> str | None:
        site_url = self.options.get("site_url") or settings.site_url
        host = urlsplit(site_url).hostname
        return host.lower() if host else None

    def is_external(self, url: str) -> bool:
        if not url:
            return False
        host = urlsplit(url).hostname
        return bool(host) and host.lower() != self._site_host()

    def is_suspicious_url(self, url: str) -> bool:
        if not url:
            return False
        if self.is_external(url):
            return True
        lowered = url.strip().lower()
        if lowered.startswith(("javascript:", "data:")):
            return True
        return any(pattern in lowered for pattern in _CODE_PATTERNS)

    def has_suspicious_query(self, url: str | None) -> bool:
        if not url:
            return False
        params = parse_qs(urlsplit(url).query)
        for name in _REDIRECT_PARAMS:
            for value in params.get(name, []):
                if value and self.is_suspicious_url(value):
                    return True
        return False

    def observe(
        self,
        to_url: str,
        from_url: str | None = None,
        method: str = "wp_redirect",
        status: int | None = 302,
        **context: Any,
    ) -> None:
        """Record a redirect performed by the host; cheap enough for the request path."""
        self.register_candidate(
            {"to_url": to_url, "from_url": from_url, "method": method, "status": status, **context}
        )

    def validate(self, candidate: dict[str, Any]) -> RawFinding | None:
        to_url = candidate.get("to_url")
        if not to_url:
            return None
        if not (self.is_suspicious_url(to_url) or self.has_suspicious_query(candidate.get("from_url"))):
            return None
        return self.finding(
            kind="redirect",
            issue_type="suspicious_redirect",
            severity=Severity.MEDIUM,
            **candidate,
        )
