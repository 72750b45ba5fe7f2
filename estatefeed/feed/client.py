"""estatefeed — Feed HTTP Client.

Handles authentication, retry logic and timing for feed downloads. Returns
raw bytes; parsing and storage belong to the callers.
"""

import asyncio
import hashlib
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx

from estatefeed.config import settings
from estatefeed.core.errors import FeedDecodeError, FetchError
from estatefeed.core.logging import get_logger

logger = get_logger("feed.client")

USER_AGENT = "estatefeed/1.0 (+feed-sync)"
AUTH_MODES = ("none", "bearer", "basic", "query")


@dataclass(frozen=True)
class FetchResult:
    """Raw HTTP response of one feed download."""

    url: str
    label: str
    body: bytes
    http_status: int
    download_seconds: float

    def decoded(self) -> Any:
        """Parse the body as JSON."""
        try:
            return json.loads(self.body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise FeedDecodeError(f"Feed [{self.label}] is not valid JSON: {e}") from e

    def checksum(self) -> str:
        """SHA-1 of the raw body; equal checksums mean an unchanged feed."""
        return hashlib.sha1(self.body).hexdigest()

    @property
    def size_bytes(self) -> int:
        return len(self.body)

    def human_size(self) -> str:
        size = self.size_bytes
        if size >= 1024 * 1024:
            return f"{round(size / (1024 * 1024), 2)} MB"
        if size >= 1024:
            return f"{round(size / 1024, 1)} KB"
        return f"{size} B"


def label_from_url(url: str) -> str:
    """Short display label: host plus the last path segment."""
    parsed = urlparse(url)
    host = parsed.netloc or url
    last = parsed.path.rstrip("/").rsplit("/", 1)[-1] if parsed.path else ""
    return f"{host}/.../{last}" if last else host


class FeedClient:
    """Async HTTP client for the real-estate CRM feed."""

    def __init__(
        self,
        auth_mode: str | None = None,
        token: str | None = None,
        username: str | None = None,
        password: str | None = None,
        query_param: str | None = None,
        timeout: float | None = None,
        retry_times: int | None = None,
        retry_sleep_ms: int | None = None,
        verify_ssl: bool | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.auth_mode = auth_mode or settings.feed_auth_mode
        if self.auth_mode not in AUTH_MODES:
            raise ValueError(f"Unknown feed auth mode: {self.auth_mode}")
        self.token = token if token is not None else settings.feed_auth_token
        self.username = username if username is not None else settings.feed_auth_user
        self.password = password if password is not None else settings.feed_auth_pass
        self.query_param = query_param or settings.feed_auth_param
        self.timeout = timeout if timeout is not None else settings.feed_http_timeout
        self.retry_times = (
            retry_times if retry_times is not None else settings.feed_http_retry_times
        )
        self.retry_sleep_ms = (
            retry_sleep_ms
            if retry_sleep_ms is not None
            else settings.feed_http_retry_sleep_ms
        )
        self.verify_ssl = (
            verify_ssl if verify_ssl is not None else settings.feed_http_verify_ssl
        )
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            kwargs: Dict[str, Any] = {
                "timeout": float(self.timeout),
                "verify": self.verify_ssl,
                "headers": {"Accept": "application/json", "User-Agent": USER_AGENT},
                "follow_redirects": True,
            }
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._client = httpx.AsyncClient(**kwargs)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> "FeedClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ── Auth ──

    def _auth_kwargs(self) -> Dict[str, Any]:
        """Request kwargs for the configured auth mode."""
        if self.auth_mode == "bearer":
            return {"headers": {"Authorization": f"Bearer {self.token or ''}"}}
        if self.auth_mode == "basic":
            return {"auth": httpx.BasicAuth(self.username or "", self.password or "")}
        if self.auth_mode == "query" and self.token:
            return {"params": {self.query_param: self.token}}
        return {}

    # ── Core Request Method ──

    async def fetch(self, url: str) -> FetchResult:
        """Download `url` with retry on transport errors and 5xx responses."""
        label = label_from_url(url)
        client = await self._get_client()
        max_attempts = self.retry_times + 1
        last_error: Optional[FetchError] = None

        for attempt in range(1, max_attempts + 1):
            logger.info(
                f"Fetching [{label}] attempt {attempt}/{max_attempts}",
                extra={"endpoint": url, "attempt": attempt},
            )
            started = time.monotonic()
            try:
                resp = await client.get(url, **self._auth_kwargs())
            except httpx.TransportError as e:
                last_error = FetchError(
                    f"Feed [{label}] request error: {e!r}", retryable=True
                )
            else:
                elapsed = round(time.monotonic() - started, 3)
                logger.info(
                    f"[{label}] HTTP {resp.status_code} in {elapsed}s",
                    extra={
                        "endpoint": url,
                        "status_code": resp.status_code,
                        "duration_ms": int(elapsed * 1000),
                    },
                )
                if resp.is_success:
                    return FetchResult(
                        url=url,
                        label=label,
                        body=resp.content,
                        http_status=resp.status_code,
                        download_seconds=elapsed,
                    )

                snippet = resp.text[:200]
                if resp.status_code < 500:
                    # Auth or configuration problem; not retried
                    raise FetchError(
                        f"Feed [{label}] returned HTTP {resp.status_code}: {snippet}",
                        status_code=resp.status_code,
                        retryable=False,
                    )
                last_error = FetchError(
                    f"Feed [{label}] returned HTTP {resp.status_code}: {snippet}",
                    status_code=resp.status_code,
                    retryable=True,
                )

            if attempt < max_attempts:
                logger.warning(
                    f"{last_error}. Retrying in {self.retry_sleep_ms}ms",
                    extra={"endpoint": url, "attempt": attempt},
                )
                await asyncio.sleep(self.retry_sleep_ms / 1000)

        logger.error(
            f"Feed [{label}] all {max_attempts} attempts failed: {last_error}",
            extra={"endpoint": url},
        )
        raise FetchError(
            f"Feed [{label}] failed after {max_attempts} attempts: {last_error}",
            status_code=last_error.status_code if last_error else 0,
            retryable=True,
        ) from last_error
