# ============================
# outreach/bloomerang/client.py
# ============================
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx

from outreach.config import bloomerang_base_url, get_api_key, settings

log = logging.getLogger(__name__)

# Tried in order; only an auth failure (401/403) moves on to the next one.
HEADER_MODES: Tuple[str, ...] = ("both", "x-only", "auth-only")
AUTH_STATUSES = frozenset({401, 403})
RETRYABLE_STATUSES = frozenset({429, 401, 403, 500, 502, 503, 504})
BODY_PREVIEW_CHARS = 300


@dataclass
class FetchResult:
    ok: bool
    url: str
    status: Optional[int] = None
    content_type: Optional[str] = None
    data: Any = None
    error: Optional[str] = None
    body_preview: Optional[str] = None

    def failure_detail(self) -> Dict[str, Any]:
        return {
            "ok": False,
            "url": self.url,
            "status": self.status,
            "error": self.error,
            "bodyPreview": self.body_preview,
        }


@dataclass
class FetchStats:
    """Per-status counters and a few sample failures for debug payloads."""
    status_counts: Dict[str, int] = field(default_factory=dict)
    sample_failures: list = field(default_factory=list)
    max_samples: int = 3

    def record(self, result: FetchResult, **extra: Any) -> None:
        key = str(result.status) if result.status else "unknown"
        self.status_counts[key] = self.status_counts.get(key, 0) + 1
        if not result.ok and len(self.sample_failures) < self.max_samples:
            self.sample_failures.append({
                "url": result.url,
                "status": result.status,
                "bodySnippet": result.body_preview,
                **extra,
            })


def build_headers(mode: str, api_key: str) -> Dict[str, str]:
    headers = {"Accept": "application/json"}
    if mode in ("both", "x-only"):
        headers["X-Api-Key"] = api_key
    if mode in ("both", "auth-only"):
        headers["Authorization"] = f"ApiKey {api_key}"
    return headers


class BloomerangClient:
    """
    Thin async GET client for the Bloomerang v2 API.

    Never raises for HTTP failures; callers get a FetchResult either way.
    Construction fails fast (BloomerangConfigError) when no API key is set.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        self._api_key = api_key or get_api_key()
        self.base_url = (base_url or bloomerang_base_url()).rstrip("/")
        self._http = httpx.AsyncClient(
            transport=transport,
            timeout=timeout or settings.BLOOMERANG_TIMEOUT_SECONDS,
        )

    async def __aenter__(self) -> "BloomerangClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def url_for(self, path: str, params: Optional[Dict[str, Any]] = None) -> str:
        url = httpx.URL(f"{self.base_url}/{path.lstrip('/')}")
        if params:
            url = url.copy_merge_params({k: str(v) for k, v in params.items() if v is not None})
        return str(url)

    async def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> FetchResult:
        url = self.url_for(path, params)

        for i, mode in enumerate(HEADER_MODES):
            try:
                r = await self._http.get(url, headers=build_headers(mode, self._api_key))
            except httpx.HTTPError as e:
                log.warning("[bloomerang] GET %s failed mode=%s error=%s", url, mode, e)
                return FetchResult(ok=False, url=url, error=f"Request to Bloomerang failed: {e}")

            content_type = r.headers.get("content-type")
            body = r.text
            log.info(
                "[bloomerang] GET %s status=%s content_type=%s header_mode=%s",
                url, r.status_code, content_type, mode,
            )

            if not r.is_success:
                if r.status_code in AUTH_STATUSES and i < len(HEADER_MODES) - 1:
                    continue
                return FetchResult(
                    ok=False,
                    url=url,
                    status=r.status_code,
                    content_type=content_type,
                    error=f"Bloomerang returned status {r.status_code}",
                    body_preview=body[:BODY_PREVIEW_CHARS],
                )

            try:
                data = json.loads(body)
            except ValueError:
                return FetchResult(
                    ok=False,
                    url=url,
                    status=r.status_code,
                    content_type=content_type,
                    error="Failed to parse JSON from Bloomerang.",
                    body_preview=body[:BODY_PREVIEW_CHARS],
                )
            return FetchResult(ok=True, url=url, status=r.status_code, content_type=content_type, data=data)

        return FetchResult(ok=False, url=url, error="Unable to complete Bloomerang request.")

    async def get_json_with_retry(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        attempts: int = 3,
        base_delay: float = 0.5,
        retry_statuses=RETRYABLE_STATUSES,
        stats: Optional[FetchStats] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> FetchResult:
        """Capped exponential backoff (base_delay, 2x, ...) on transient statuses."""
        delay = base_delay
        result: Optional[FetchResult] = None
        for attempt in range(1, attempts + 1):
            result = await self.get_json(path, params)
            if stats is not None:
                stats.record(result, attempt=attempt)
            if result.ok:
                return result
            if result.status in retry_statuses and attempt < attempts:
                log.info(
                    "[bloomerang] retrying %s after status=%s attempt=%s/%s delay=%.2fs",
                    result.url, result.status, attempt, attempts, delay,
                )
                await sleep(delay)
                delay *= 2
                continue
            return result
        return result  # type: ignore[return-value]
