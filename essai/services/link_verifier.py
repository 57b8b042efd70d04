"""
Link verification service.

This module provides the LinkVerifier class, which decides whether a candidate
article URL is deliverable. Checks are cheap-first: a HEAD probe, then a
capped GET with content inspection. Verification never raises; every outcome
is a VerificationResult with a confidence tier.
"""

import asyncio
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

import requests

from essai.models import VerificationResult

logger = logging.getLogger(__name__)

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
}

# A bare 200 from these is proof enough
TRUSTED_DOMAINS = [
    "aeon.co", "paulgraham.com", "gwern.net",
    "astralcodexten.substack.com", "substack.com",
    "arxiv.org", "ssrn.com", "nber.org",
    "jstor.org", "philpapers.org",
    "plato.stanford.edu",
    "medium.com", "wikipedia.org",
    "theatlantic.com", "newyorker.com", "nybooks.com",
    "lrb.co.uk", "theguardian.com",
    "econlib.org", "libertyfund.org",
    "gutenberg.org", "archive.org",
    "researchgate.net", "academia.edu",
    "lesswrong.com", "overcomingbias.com",
    "marginalrevolution.com", "slatestarcodex.com",
    "nautil.us", "quillette.com",
    "thenewatlantis.com", "worksinprogress.co",
    "nplusonemag.com",
]

# Page exists but may need a subscription
PAYWALL_DOMAINS = [
    "nytimes.com", "wsj.com", "ft.com",
    "economist.com", "wired.com",
    "hbr.org", "foreignaffairs.com",
]

SEARCH_HOSTS = ("google.com", "duckduckgo.com", "bing.com")

SOFT_404_PATTERNS = [
    re.compile(r"page\s*(not\s*found|doesn'?t\s*exist)", re.IGNORECASE),
    re.compile(r"no\s*longer\s*(available|exists)", re.IGNORECASE),
    re.compile(r"has\s*been\s*(removed|deleted)", re.IGNORECASE),
    re.compile(r"content\s*unavailable", re.IGNORECASE),
]
SOFT_404_MAX_LENGTH = 5000

_TITLE_RE = re.compile(r"<title[^>]*>([^<]+)</title>", re.IGNORECASE)

_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "failed to resolve",
    "nameresolutionerror",
    "temporary failure in name resolution",
)
_REFUSED_MARKERS = ("connection refused", "connectionrefusederror", "errno 111")


def _hostname(url: str) -> str:
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def _matches_domain(hostname: str, domains: Iterable[str]) -> bool:
    return bool(hostname) and any(
        hostname == d or hostname.endswith("." + d) for d in domains
    )


def is_search_fallback(url: str) -> bool:
    """True for a generic search-engine query URL rather than an article link."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    host = (parsed.hostname or "").lower()
    if not _matches_domain(host, SEARCH_HOSTS):
        return False
    return parsed.path.rstrip("/") in ("/search", "/html", "") and "q=" in parsed.query


def extract_title(html: str) -> str:
    """Extracts the <title> text from an HTML page."""
    match = _TITLE_RE.search(html)
    return match.group(1).strip()[:300] if match else ""


def _clean(text: str) -> str:
    return re.sub(r"[^\w\s]", "", text.lower())


def title_match_score(expected_title: str, actual_title: str) -> float:
    """Fraction of significant expected-title words (over 3 chars) found in the actual title."""
    if not expected_title or not actual_title:
        return 0.0

    expected_words = [w for w in _clean(expected_title).split() if len(w) > 3]
    if not expected_words:
        return 1.0

    actual = _clean(actual_title)
    matches = [w for w in expected_words if w in actual]
    return len(matches) / len(expected_words)


class LinkVerifier:
    """Checks candidate URLs for reachability and plausibility."""

    def __init__(
        self,
        trusted_domains: Optional[List[str]] = None,
        paywall_domains: Optional[List[str]] = None,
        probe_timeout: float = 6,
        fetch_timeout: float = 10,
        max_body_bytes: int = 500_000,
        session: Optional[requests.Session] = None,
    ):
        self.trusted_domains = list(TRUSTED_DOMAINS if trusted_domains is None else trusted_domains)
        self.paywall_domains = list(PAYWALL_DOMAINS if paywall_domains is None else paywall_domains)
        self.probe_timeout = probe_timeout
        self.fetch_timeout = fetch_timeout
        self.max_body_bytes = max_body_bytes
        self.session = session or requests.Session()
        self.session.headers.update(BROWSER_HEADERS)

    def is_trusted(self, url: str) -> bool:
        return _matches_domain(_hostname(url), self.trusted_domains)

    def is_paywall(self, url: str) -> bool:
        return _matches_domain(_hostname(url), self.paywall_domains)

    async def verify(self, url: str, expected_title: str = "") -> VerificationResult:
        """Verifies a URL without blocking the event loop. Never raises."""
        try:
            return await asyncio.to_thread(self.verify_sync, url, expected_title)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning("Verification crashed for %s: %s", url, e)
            return VerificationResult(
                is_valid=False, confidence="failed", reason=str(e)[:200], is_paywall=False
            )

    def verify_sync(self, url: str, expected_title: str = "") -> VerificationResult:
        """Blocking verification: HEAD probe, then full GET."""
        if is_search_fallback(url):
            return VerificationResult(
                is_valid=True,
                confidence="low",
                reason="Search fallback URL",
                is_paywall=False,
                is_search_fallback=True,
            )

        trusted = self.is_trusted(url)
        paywall = self.is_paywall(url)

        probe = self._probe(url, trusted, paywall)
        if probe is not None:
            return probe

        try:
            status, html = self._fetch(url)
        except requests.RequestException as e:
            return self._classify_error(e, trusted, paywall)

        return self._inspect(status, html, expected_title, trusted, paywall)

    def _probe(self, url: str, trusted: bool, paywall: bool) -> Optional[VerificationResult]:
        """HEAD request. Returns a verdict only when it is conclusive."""
        try:
            resp = self.session.head(
                url, timeout=self.probe_timeout, allow_redirects=True
            )
        except requests.RequestException as e:
            logger.debug("HEAD failed for %s: %s", url, e)
            return None

        if not 200 <= resp.status_code < 400:
            return None

        content_type = resp.headers.get("content-type", "").lower()
        if "pdf" in content_type:
            return VerificationResult(
                is_valid=True,
                confidence="high",
                status=resp.status_code,
                is_paywall=False,
                is_pdf=True,
            )

        if trusted or paywall:
            return VerificationResult(
                is_valid=True,
                confidence="high" if trusted else "medium",
                status=resp.status_code,
                is_paywall=paywall,
            )
        return None

    def _fetch(self, url: str) -> Tuple[int, str]:
        """GET with a capped body. Returns (status, decoded body)."""
        resp = self.session.get(
            url, timeout=self.fetch_timeout, allow_redirects=True, stream=True
        )
        try:
            body = b""
            for chunk in resp.iter_content(chunk_size=16384):
                body += chunk
                if len(body) >= self.max_body_bytes:
                    body = body[: self.max_body_bytes]
                    break
            encoding = resp.encoding or "utf-8"
            return resp.status_code, body.decode(encoding, errors="replace")
        finally:
            resp.close()

    def _inspect(
        self,
        status: int,
        html: str,
        expected_title: str,
        trusted: bool,
        paywall: bool,
    ) -> VerificationResult:
        page_title = extract_title(html)

        if status in (404, 410):
            return VerificationResult(
                is_valid=False,
                confidence="high",
                status=status,
                title=page_title,
                reason="Page not found",
                is_paywall=False,
            )

        if status == 200 and len(html) < SOFT_404_MAX_LENGTH:
            if any(p.search(html) for p in SOFT_404_PATTERNS):
                return VerificationResult(
                    is_valid=False,
                    confidence="medium",
                    status=status,
                    title=page_title,
                    reason="Content appears removed (soft 404)",
                    is_paywall=False,
                )

        if 200 <= status < 400:
            result = VerificationResult(
                is_valid=True,
                confidence="medium",
                status=status,
                title=page_title,
                is_paywall=paywall,
            )
            if expected_title and page_title:
                score = title_match_score(expected_title, page_title)
                if score >= 0.3:
                    result["confidence"] = "high"
                elif score == 0 and len(expected_title.split()) > 2:
                    result["confidence"] = "low"
                    result["reason"] = "Title mismatch: page may not be the expected article"
            if trusted:
                result["confidence"] = "high"
            return result

        if status in (401, 403):
            return VerificationResult(
                is_valid=True,
                confidence="medium",
                status=status,
                title=page_title,
                is_paywall=True,
                reason="Login or subscription required",
            )

        if status >= 500:
            return VerificationResult(
                is_valid=False,
                confidence="low",
                status=status,
                reason=f"Server error ({status})",
                is_paywall=False,
            )

        return VerificationResult(
            is_valid=False,
            confidence="medium",
            status=status,
            reason=f"HTTP {status}",
            is_paywall=False,
        )

    def _classify_error(
        self, error: requests.RequestException, trusted: bool, paywall: bool
    ) -> VerificationResult:
        message = str(error).lower()

        if isinstance(error, requests.exceptions.ConnectionError) and not isinstance(
            error, (requests.exceptions.SSLError, requests.exceptions.Timeout)
        ):
            if any(m in message for m in _DNS_MARKERS):
                return VerificationResult(
                    is_valid=False, confidence="high", reason="Domain not found", is_paywall=False
                )
            if any(m in message for m in _REFUSED_MARKERS):
                return VerificationResult(
                    is_valid=False, confidence="high", reason="Connection refused", is_paywall=False
                )

        if isinstance(error, requests.exceptions.Timeout):
            return VerificationResult(
                is_valid=False, confidence="low", reason="Timeout", is_paywall=False
            )

        if isinstance(error, requests.exceptions.SSLError):
            return VerificationResult(
                is_valid=True, confidence="low", reason="SSL certificate issue", is_paywall=False
            )

        if trusted or paywall:
            return VerificationResult(
                is_valid=True,
                confidence="low",
                reason="Verification blocked (trusted domain)",
                is_paywall=paywall,
            )

        return VerificationResult(
            is_valid=False,
            confidence="low",
            reason=str(error)[:200] or type(error).__name__,
            is_paywall=False,
        )

    async def find_first_valid(
        self, candidates: List[Dict[str, Any]]
    ) -> Optional[Dict[str, Any]]:
        """
        Verifies candidates in order and returns the first valid one as
        {"article", "verification", "index"}, or None.
        """
        for index, candidate in enumerate(candidates):
            url = candidate.get("url", "")
            try:
                verification = await self.verify(url, candidate.get("title", ""))
            except Exception as e:  # pylint: disable=broad-exception-caught
                logger.warning("Verification crashed for %s: %s", url, e)
                continue

            if verification.get("is_valid"):
                return {"article": candidate, "verification": verification, "index": index}

            logger.info(
                "Link %d failed: %s (%s)", index + 1, url, verification.get("reason")
            )
        return None
