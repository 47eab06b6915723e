"""
Remote API Gateway - Budgeted Brawlhalla API Client
===================================================

Every outbound call goes through the shared :class:`TokenBudgetLimiter`:
- 429 is reported to the limiter (cluster-wide backoff) and retried a bounded number of times
- 5xx, timeouts and network errors are retried a small fixed number of times
- 404 surfaces as :class:`RemoteNotFoundError` and is never retried
"""

import asyncio
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import httpx

from brawlsync.core.errors import (
    RemoteApiError,
    RemoteNotFoundError,
    RemoteThrottledError,
    RemoteTransientError,
)
from brawlsync.utils.logger import get_logger
from brawlsync.utils.rate_limiter import TokenBudgetLimiter

log = get_logger(__name__)

DEFAULT_BASE_URL = "https://api.brawlhalla.com"


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Read a Retry-After header given as delta-seconds or as an HTTP-date."""
    if value is None or not str(value).strip():
        return None
    value = str(value).strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max((when - now).total_seconds(), 0.0)


class RemoteApiGateway:
    """
    Provider client bound to the shared request budget
    """

    def __init__(
        self,
        limiter: TokenBudgetLimiter,
        *,
        api_key: Optional[str],
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        max_throttle_retries: int = 3,
        max_transient_retries: int = 1,
        transient_retry_delay: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.limiter = limiter
        self.timeout = timeout
        self.max_throttle_retries = max_throttle_retries
        self.max_transient_retries = max_transient_retries
        self.transient_retry_delay = transient_retry_delay
        self.request_count = 0

        client_kwargs = {
            "base_url": base_url,
            "params": {"api_key": api_key or ""},
            "timeout": httpx.Timeout(timeout),
        }
        if transport is not None:
            client_kwargs["transport"] = transport
        self.client = httpx.AsyncClient(**client_kwargs)
        log.info(f"RemoteApiGateway initialized for {base_url}, timeout={timeout}s")

    async def close(self):
        """Close the underlying HTTP client"""
        await self.client.aclose()
        log.info("RemoteApiGateway client closed")

    async def _send(self, endpoint: str, params: Optional[Dict[str, Any]]) -> httpx.Response:
        self.request_count += 1
        return await self.client.get(endpoint, params=params or None)

    async def call(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Perform a budgeted GET and return the decoded JSON body

        Raises:
            RemoteNotFoundError: provider answered 404
            RemoteThrottledError: still throttled after the bounded retries
            RemoteTransientError: 5xx, timeout or network failure after the retry
            RemoteApiError: any other non-success status
        """
        throttled = 0
        transient = 0

        while True:
            failure: Optional[str] = None
            try:
                response = await self.limiter.schedule(self._send, endpoint, params)
            except httpx.TransportError as exc:
                failure = f"{type(exc).__name__}: {exc}"
                response = None

            if response is not None:
                status = response.status_code

                if status == 429:
                    retry_after = parse_retry_after(response.headers.get("retry-after"))
                    await self.limiter.report_throttled(retry_after, throttled)
                    if throttled >= self.max_throttle_retries:
                        log.error(f"Still throttled on {endpoint} after {throttled + 1} attempts")
                        raise RemoteThrottledError(
                            f"Provider throttled {endpoint}", endpoint=endpoint, retry_after=retry_after
                        )
                    throttled += 1
                    continue

                if status == 404:
                    raise RemoteNotFoundError(f"{endpoint} not found", endpoint=endpoint)

                if status >= 500:
                    failure = f"HTTP {status}"
                elif status >= 400:
                    raise RemoteApiError(f"{endpoint} returned HTTP {status}", endpoint=endpoint, status_code=status)
                else:
                    try:
                        return response.json()
                    except ValueError:
                        failure = f"non-JSON body (HTTP {status})"

            transient += 1
            if transient > self.max_transient_retries:
                log.error(f"Giving up on {endpoint} after {transient} attempts: {failure}")
                raise RemoteTransientError(
                    f"Transient failure calling {endpoint}: {failure}",
                    endpoint=endpoint,
                    status_code=response.status_code if response is not None else None,
                )
            log.warning(f"Transient failure on {endpoint} ({failure}); retrying in {self.transient_retry_delay:.2f}s")
            await asyncio.sleep(self.transient_retry_delay)

    # -- Typed provider calls --

    async def get_player_ranked(self, brawlhalla_id: int) -> Dict[str, Any]:
        return await self.call(f"/player/{brawlhalla_id}/ranked")

    async def get_player_stats(self, brawlhalla_id: int) -> Dict[str, Any]:
        return await self.call(f"/player/{brawlhalla_id}/stats")

    async def get_rankings(
        self, bracket: str, region: str = "all", page: int = 1, name: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        params = {"name": name} if name else None
        data = await self.call(f"/rankings/{bracket}/{region}/{page}", params)
        return data if isinstance(data, list) else []

    async def search_player(self, name: str) -> List[Dict[str, Any]]:
        return await self.get_rankings("1v1", "all", 1, name=name)

    async def get_clan(self, clan_id: int) -> Dict[str, Any]:
        return await self.call(f"/clan/{clan_id}")

    async def get_all_legends(self) -> List[Dict[str, Any]]:
        return await self.call("/legend/all")

    async def remaining_budget(self) -> int:
        return await self.limiter.remaining()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
