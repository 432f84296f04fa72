"""
Paginating HTTP client with retry and backoff for the commerce API.

Transient failures (HTTP 429, 5xx, transport errors) are retried with
exponential backoff; anything else fails the call at once. Every request,
including retries, first waits for its slot on the shared call-gap limiter.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core.logging_config import get_logger
from ..domain.exceptions import (
    UpstreamClientError,
    UpstreamRateLimited,
    UpstreamServerError,
    UpstreamUnavailable,
)
from ..metrics import upstream_requests_total, upstream_retries_total
from .rate_limiter import CallGapLimiter

logger = get_logger(__name__)

BODY_PREVIEW_CHARS = 300


@dataclass
class PageResult:
    """All records of a paginated listing."""

    records: List[Dict[str, Any]] = field(default_factory=list)
    total_count: int = 0


class RetryClient:
    """
    Async GET client with fault tolerance.

    Features:
    - Shared minimum gap between calls
    - Automatic retry with capped exponential backoff
    - Auto-pagination of page/page_size listings
    - Async HTTP requests with connection pooling
    """

    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        limiter: Optional[CallGapLimiter] = None,
        timeout_seconds: float = 30.0,
        max_attempts: int = 5,
        backoff_multiplier: float = 1.0,
        backoff_cap_seconds: float = 20.0,
        page_size: int = 10000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize client.

        Args:
            base_url: Upstream base URL
            headers: Headers sent with every request (auth, accept)
            limiter: Shared call-gap limiter; a 350 ms one is created if omitted
            timeout_seconds: Per-request timeout
            max_attempts: Attempts per request, including the first
            backoff_multiplier: Base of the exponential backoff in seconds
            backoff_cap_seconds: Upper bound for a single backoff sleep
            page_size: Default page size for paginated listings
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url
        self.headers = headers or {}
        self.limiter = limiter or CallGapLimiter(min_gap_seconds=0.35)
        self.timeout = timeout_seconds
        self.max_attempts = max_attempts
        self.backoff_multiplier = backoff_multiplier
        self.backoff_cap_seconds = backoff_cap_seconds
        self.page_size = page_size
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={
                    "Accept": "application/json",
                    "User-Agent": "Trend-Service/1.0",
                    **self.headers,
                },
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client connections."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _request_once(self, path: str, params: Optional[Dict[str, Any]]) -> Any:
        """
        Send one GET and classify the response.

        Raises:
            UpstreamRateLimited: On HTTP 429
            UpstreamServerError: On 5xx or transport failure
            UpstreamClientError: On any other non-2xx status or a non-JSON body
        """
        await self.limiter.wait_turn()
        client = await self._get_client()

        query = {k: str(v) for k, v in (params or {}).items() if v is not None}
        try:
            response = await client.get(path, params=query)
        except httpx.TransportError as e:
            upstream_requests_total.labels(outcome="transport_error").inc()
            raise UpstreamServerError(path, None, str(e)) from e

        status = response.status_code
        if status == 429:
            upstream_requests_total.labels(outcome="rate_limited").inc()
            raise UpstreamRateLimited(path, response.text[:BODY_PREVIEW_CHARS])
        if status >= 500:
            upstream_requests_total.labels(outcome="server_error").inc()
            raise UpstreamServerError(path, status, response.text[:BODY_PREVIEW_CHARS])
        if not 200 <= status < 300:
            upstream_requests_total.labels(outcome="client_error").inc()
            raise UpstreamClientError(path, status, response.text[:BODY_PREVIEW_CHARS])

        upstream_requests_total.labels(outcome="ok").inc()
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamClientError(path, status, f"invalid JSON body: {e}") from e

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        reason = "rate_limited" if isinstance(error, UpstreamRateLimited) else "server_error"
        upstream_retries_total.labels(reason=reason).inc()
        logger.warning(
            "upstream_retry",
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            sleep_s=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
            error=str(error),
        )

    async def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        GET a JSON document, retrying transient failures.

        Raises:
            UpstreamClientError: On a non-retryable status
            UpstreamUnavailable: When every attempt failed transiently
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception_type((UpstreamRateLimited, UpstreamServerError)),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_multiplier, max=self.backoff_cap_seconds),
            before_sleep=self._log_retry,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._request_once(path, params)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            logger.error("upstream_unavailable", path=path, attempts=self.max_attempts, error=str(last_error))
            raise UpstreamUnavailable(path, self.max_attempts, last_error) from last_error

    async def fetch_page(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        records_key: str = "orders",
        total_key: str = "total",
        page_size: Optional[int] = None,
    ) -> PageResult:
        """
        Fetch every page of a listing, strictly one page after another.

        Stops once the accumulated count reaches the reported total or a short
        page comes back. A failure on any page discards the pages already read.

        Args:
            path: Listing endpoint path
            params: Query parameters other than paging
            records_key: Response field holding the page's records
            total_key: Response field holding the total record count
            page_size: Override of the default page size

        Returns:
            PageResult with every record and the reported total
        """
        size = page_size or self.page_size
        page = 1
        result = PageResult()

        while True:
            data = await self.get_json(path, {**(params or {}), "page_size": size, "page": page})
            if not isinstance(data, dict):
                data = {}
            batch = data.get(records_key) or []
            result.total_count = int(data.get(total_key) or 0)
            result.records.extend(batch)

            if len(result.records) >= result.total_count or len(batch) < size:
                break
            page += 1

        logger.debug(
            "upstream_pages_fetched",
            path=path,
            pages=page,
            records=len(result.records),
            total=result.total_count,
        )
        return result
