"""
Shared async HTTP client with:
- Retry with exponential backoff (JSON metadata calls)
- Single-attempt JSON writes (queued mutations; the queue retries)
- Single-attempt byte fetches (media; callers fall back on failure)
- Redirect limits
- Timeouts
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import aiohttp
from aiohttp import ClientSession, TCPConnector

from m3w_offline.config.settings import settings

logger = logging.getLogger(__name__)

_RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


class NetworkError(Exception):
    """Fetch failure or non-2xx response. status is 0 when no response arrived."""

    def __init__(self, status: int, message: str):
        self.status = status
        super().__init__(f"HTTP {status}: {message}" if status else message)


class AuthExpiredError(NetworkError):
    """The backend answered 401: the credential must be refreshed."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(401, message)


@dataclass
class FetchedBytes:
    status: int
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)


def build_session() -> ClientSession:
    connector = TCPConnector(limit=20)
    timeout = aiohttp.ClientTimeout(total=settings.HTTP_TIMEOUT_SECONDS)
    return ClientSession(
        connector=connector,
        timeout=timeout,
        trust_env=False,
    )


def bearer_headers(token: Optional[str], base: Optional[dict] = None) -> dict[str, str]:
    headers = dict(base or {})
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


async def fetch_json(
    session: ClientSession,
    url: str,
    *,
    headers: Optional[dict] = None,
    params: Optional[dict] = None,
) -> Any:
    """GET JSON with retry."""
    return await _request_with_retry(
        session, "GET", url, headers=headers, params=params
    )


async def send_json(
    session: ClientSession,
    method: str,
    url: str,
    *,
    headers: Optional[dict] = None,
    json_body: Any = None,
) -> Any:
    """Write request in one attempt; the caller owns retries. Returns the decoded reply or None."""
    return await _request_with_retry(
        session, method, url, headers=headers, json_body=json_body, attempts=1
    )


async def fetch_bytes(
    session: ClientSession,
    url: str,
    *,
    headers: Optional[dict] = None,
) -> FetchedBytes:
    """GET raw bytes in one attempt. Raises NetworkError on failure or non-2xx."""
    try:
        async with session.get(
            url,
            headers=headers,
            allow_redirects=True,
            max_redirects=settings.HTTP_MAX_REDIRECTS,
        ) as resp:
            if resp.status == 401:
                raise AuthExpiredError()
            if resp.status >= 300:
                body = await resp.text(errors="replace")
                raise NetworkError(resp.status, body[:200])
            content = await resp.read()
            return FetchedBytes(
                status=resp.status,
                body=content,
                headers={k: v for k, v in resp.headers.items()},
            )
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise NetworkError(0, f"Request failed: {exc!r}") from exc


async def _request_with_retry(
    session: ClientSession,
    method: str,
    url: str,
    *,
    headers: Optional[dict] = None,
    params: Optional[dict] = None,
    json_body: Any = None,
    attempts: int = settings.HTTP_RETRY_ATTEMPTS,
    backoff: float = settings.HTTP_RETRY_BACKOFF,
) -> Any:
    last_exc: Exception = NetworkError(0, "No attempts made")
    for attempt in range(1, attempts + 1):
        try:
            async with session.request(
                method,
                url,
                headers=headers,
                params=params,
                json=json_body,
                allow_redirects=True,
                max_redirects=settings.HTTP_MAX_REDIRECTS,
            ) as resp:
                if resp.status in _RETRYABLE_STATUSES and attempt < attempts:
                    wait = backoff ** attempt
                    logger.warning(
                        "Retryable HTTP status",
                        extra={"status": resp.status, "attempt": attempt, "wait": wait},
                    )
                    await asyncio.sleep(wait)
                    continue
                if resp.status == 401:
                    raise AuthExpiredError()
                if resp.status >= 400:
                    body = await resp.text(errors="replace")
                    raise NetworkError(resp.status, body[:200])
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            last_exc = NetworkError(0, f"Connection error: {exc!r}")
            if attempt < attempts:
                wait = backoff ** attempt
                logger.warning(
                    "Connection error, retrying",
                    extra={"error": str(exc), "attempt": attempt, "wait": wait},
                )
                await asyncio.sleep(wait)
    raise last_exc
