"""
HTTP client for comic source adapters.

Asynchronous aiohttp client with user agent rotation, Cloudflare-style
block detection and error mapping onto the aggregator exception hierarchy.
Retries are left to the request queue.
"""

import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

import aiohttp
import orjson

from ..config import HttpConfig
from ..utils.exceptions import NetworkError, NotFoundError, ParsingError

logger = logging.getLogger(__name__)

BLOCK_TITLES = ("just a moment...", "attention required!", "please wait...", "checking your browser")
BLOCK_BODY_MARKERS = ("cf-browser-verification", "cf_chl_opt", "challenge-platform", "ray id", "cloudflare")
BLOCK_STATUS_CODES = (403, 503, 520, 521, 522, 523, 524, 525, 526)
CAPTCHA_MARKERS = ("captcha", "hcaptcha", "recaptcha")


@dataclass
class BlockDetection:
    """Outcome of anti-bot block detection for one response.

    Attributes:
        blocked: True when confidence reached the threshold
        block_type: challenge, captcha or forbidden
        confidence: Accumulated evidence score
        details: Matched signals
    """

    blocked: bool = False
    block_type: Optional[str] = None
    confidence: int = 0
    details: dict[str, Any] = field(default_factory=dict)


def detect_block(
    status: int,
    headers: Mapping[str, str],
    body: Optional[str],
    threshold: Optional[int] = None,
) -> BlockDetection:
    """Score a response for Cloudflare-style blocking.

    Signals: blocking status code (+30), Cloudflare headers (+20), and for
    HTML bodies a challenge title (+25), each body marker (+15) and captcha
    markers (+30).

    Args:
        status: HTTP status code
        headers: Response headers (any key case)
        body: Response text, if read
        threshold: Confidence needed to report a block (default: HttpConfig)

    Returns:
        BlockDetection result

    Example:
        >>> detect_block(503, {"server": "cloudflare"}, "<title>Just a moment...</title>").blocked
        True
    """
    threshold = threshold if threshold is not None else HttpConfig.BLOCK_CONFIDENCE_THRESHOLD
    lowered = {str(key).lower(): str(value) for key, value in headers.items()}
    result = BlockDetection()

    if status in BLOCK_STATUS_CODES:
        result.confidence += 30
        result.details["status_code"] = status

    if "cf-ray" in lowered or "cf-cache-status" in lowered or "cloudflare" in lowered.get("server", "").lower():
        result.confidence += 20
        result.details["cloudflare_headers"] = True

    is_html = "text/html" in lowered.get("content-type", "")
    if is_html and isinstance(body, str):
        text = body.lower()

        for title in BLOCK_TITLES:
            if title in text:
                result.confidence += 25
                result.block_type = "challenge"
                result.details["matched_title"] = title
                break

        for marker in BLOCK_BODY_MARKERS:
            if marker in text:
                result.confidence += 15
                result.details["matched_pattern"] = marker

        if any(marker in text for marker in CAPTCHA_MARKERS):
            result.confidence += 30
            result.block_type = "captcha"
            result.details["captcha_detected"] = True

    result.blocked = result.confidence >= threshold
    if result.blocked and not result.block_type:
        result.block_type = "forbidden" if status == 403 else "challenge"
    return result


class HttpSourceClient:
    """Asynchronous HTTP client shared by source adapters.

    Features:
    - One aiohttp session per client, created lazily
    - User agent rotation across requests
    - Block detection on every response
    - 404 mapped to NotFoundError, other failures to NetworkError
    - Request and block counters

    Example:
        ```python
        async with HttpSourceClient(base_url="https://aquareader.net") as http:
            html = await http.fetch_text("/manga/one-piece/")
            data = await http.fetch_json("https://api.mangadex.org/manga", params={"limit": 20})
        ```
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        user_agents: Optional[Sequence[str]] = None,
        session: Optional[aiohttp.ClientSession] = None,
        default_headers: Optional[Mapping[str, str]] = None,
    ):
        """Initialize HTTP client.

        Args:
            base_url: Prefix for relative URLs
            timeout: Total request timeout in seconds (default: HttpConfig)
            user_agents: User agents to rotate (default: HttpConfig)
            session: Externally owned session (not closed by this client)
            default_headers: Headers sent with every request
        """
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = timeout if timeout is not None else HttpConfig.REQUEST_TIMEOUT
        self._user_agents = itertools.cycle(list(user_agents or HttpConfig.USER_AGENTS))
        self._default_headers = dict(default_headers or {})
        self._session = session
        self._owns_session = session is None

        self._stats = {
            "requests_made": 0,
            "successful_requests": 0,
            "blocked_requests": 0,
            "not_found": 0,
            "errors": 0,
            "last_blocked_at": None,
        }

    async def __aenter__(self) -> "HttpSourceClient":
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _ensure_session(self) -> None:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
            logger.debug("Created new aiohttp session")

    async def close(self) -> None:
        """Close the session if this client created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
            logger.debug("Closed aiohttp session")

    def _resolve(self, url: str) -> str:
        if self.base_url and not url.startswith(("http://", "https://")):
            return f"{self.base_url}/{url.lstrip('/')}"
        return url

    def _headers(self, extra: Optional[Mapping[str, str]] = None) -> dict[str, str]:
        headers = {
            "User-Agent": next(self._user_agents),
            "Accept-Language": "en-US,en;q=0.9",
            **self._default_headers,
        }
        if extra:
            headers.update(extra)
        return headers

    async def _request_text(
        self,
        url: str,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> str:
        await self._ensure_session()
        target = self._resolve(url)
        self._stats["requests_made"] += 1

        try:
            async with self._session.get(target, params=params, headers=self._headers(headers)) as response:
                body = await response.text()
                status = response.status
                response_headers = dict(response.headers.items())

        except aiohttp.ClientError as e:
            self._stats["errors"] += 1
            logger.error(
                "HTTP client error",
                extra={"url": target, "error": str(e)},
            )
            raise NetworkError(f"HTTP client error: {e}", url=target) from e

        detection = detect_block(status, response_headers, body)
        if detection.blocked:
            self._stats["blocked_requests"] += 1
            self._stats["last_blocked_at"] = datetime.now().isoformat()
            logger.warning(
                f"Blocked response ({detection.block_type}) from {target}",
                extra={"status": status, "confidence": detection.confidence},
            )
            raise NetworkError(
                f"Cloudflare {detection.block_type} detected",
                url=target,
                status_code=status,
                blocked=True,
                block_type=detection.block_type,
            )

        if status == 404:
            self._stats["not_found"] += 1
            raise NotFoundError(f"Not found: {target}", resource=target)

        if status >= 400:
            self._stats["errors"] += 1
            logger.error(
                "Request failed",
                extra={"status": status, "url": target},
            )
            raise NetworkError(f"Request failed: {status}", url=target, status_code=status)

        self._stats["successful_requests"] += 1
        logger.debug(
            "Request successful",
            extra={"url": target, "content_length": len(body), "status": status},
        )
        return body

    async def fetch_text(
        self,
        url: str,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> str:
        """Fetch a page as text.

        Args:
            url: Absolute URL or path relative to ``base_url``
            params: Query parameters
            headers: Extra request headers

        Returns:
            Response body

        Raises:
            NotFoundError: On HTTP 404
            NetworkError: On transport errors, other 4xx/5xx and detected blocking
        """
        return await self._request_text(url, params=params, headers=headers)

    async def fetch_json(
        self,
        url: str,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        """Fetch and decode a JSON document.

        Raises:
            ParsingError: If the body is not valid JSON
            NotFoundError: On HTTP 404
            NetworkError: On transport errors, other 4xx/5xx and detected blocking
        """
        body = await self._request_text(
            url, params=params, headers={"Accept": "application/json", **(headers or {})}
        )
        try:
            return orjson.loads(body)
        except orjson.JSONDecodeError as e:
            raise ParsingError(
                f"Invalid JSON from {self._resolve(url)}: {e}",
                parser="json",
                raw_data=body,
            ) from e

    def get_stats(self) -> dict[str, Any]:
        """Get request, block and error counters."""
        total = self._stats["requests_made"]
        return {
            **self._stats,
            "block_rate": round(self._stats["blocked_requests"] / total, 3) if total else 0.0,
        }
