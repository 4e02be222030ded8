"""
Request gateway for the Microsoft Graph API.

All outbound management-API traffic goes through RequestGateway:
- Connection-state gating (NotConnectedError, no network attempt)
- @odata.nextLink auto-pagination
- Retry of 429/5xx/connection failures with capped exponential backoff

The gateway logs every attempt but never writes to the issue ledger;
recording failures is the caller's job.
"""

import asyncio
import json as jsonlib
import logging
from typing import Any, Dict, List, Optional, Sequence, Union

import aiohttp

from ..backoff import GATEWAY_BACKOFF, BackoffPolicy, Sleeper, default_sleep
from ..exceptions import (
    MaxRetriesExceededError,
    NonRetriableTransportError,
    NotConnectedError,
    ParseError,
    RetriableTransportError,
)
from .session import GraphSession

logger = logging.getLogger(__name__)


GRAPH_BETA_URL = "https://graph.microsoft.com/beta"
NEXT_LINK = "@odata.nextLink"
MAX_RETRY_ATTEMPTS = 3
HTTP_TIMEOUT_SECONDS = 30
USER_AGENT = "device-dna"


def _is_retriable(status: int) -> bool:
    return status == 429 or status >= 500


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        # HTTP-date form is not used by Graph; fall back to the schedule
        return None
    return seconds if seconds >= 0 else None


def _error_message(status: int, body: Dict[str, Any]) -> str:
    error = body.get("error")
    if isinstance(error, dict):
        detail = error.get("message") or error.get("code")
    else:
        detail = error or body.get("message")
    return f"HTTP {status}: {detail}" if detail else f"HTTP {status}"


def rows_from_table(body: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Convert a synchronous report response (Schema + Values) to row dicts.

    Args:
        body: {"Schema": [{"Column": ...}], "Values": [[...], ...]}

    Returns:
        One dict per row keyed by column name
    """
    columns = [col.get("Column") for col in body.get("Schema") or []]
    return [dict(zip(columns, values)) for values in body.get("Values") or []]


class RequestGateway:
    """
    Transport for every Graph call made during a run.

    Usage:
        async with RequestGateway(session) as gateway:
            devices = await gateway.call("GET", "devices?$filter=...")
    """

    def __init__(
        self,
        session: GraphSession,
        base_url: str = GRAPH_BETA_URL,
        max_retries: int = MAX_RETRY_ATTEMPTS,
        timeout: int = HTTP_TIMEOUT_SECONDS,
        backoff: BackoffPolicy = GATEWAY_BACKOFF,
        sleep: Optional[Sleeper] = None,
    ):
        """
        Initialize the gateway.

        Args:
            session: Graph session (must be connected before calls)
            base_url: Root for relative URIs (default: beta endpoint)
            max_retries: Attempts per request, including the first
            timeout: Total per-request timeout in seconds
            backoff: Delay schedule between attempts
            sleep: Awaitable sleep, injectable for tests
        """
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.backoff = backoff
        self._sleep = sleep or default_sleep
        self._http: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_config(cls, session: GraphSession, config, **kwargs) -> "RequestGateway":
        return cls(
            session,
            base_url=config.graph_base_url,
            max_retries=config.max_retries,
            timeout=config.http_timeout,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _get_http(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={"Accept": "application/json", "User-Agent": USER_AGENT},
            )
            logger.debug("Created new aiohttp session")
        return self._http

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        if self._http and not self._http.closed:
            await self._http.close()
            logger.debug("Closed aiohttp session")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve(self, uri: str) -> str:
        """Absolute URL for a relative Graph URI."""
        if uri.startswith(("http://", "https://")):
            return uri
        return f"{self.base_url}/{uri.lstrip('/')}"

    async def call(
        self,
        method: str,
        uri: str,
        json: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Issue a request and return every record across all pages.

        Args:
            method: HTTP method
            uri: Relative Graph URI or absolute URL
            json: Optional request body (first page only)

        Returns:
            Records concatenated in fetch order. A body without a "value"
            collection is returned as a single record.

        Raises:
            NotConnectedError: Session not connected (no request made)
            NonRetriableTransportError: 4xx other than 429
            MaxRetriesExceededError: Retriable failures on every attempt
        """
        self._require_connected()

        records: List[Dict[str, Any]] = []
        url: Optional[str] = self.resolve(uri)
        pages = 0

        while url:
            body = await self._send_with_retry(method, url, json=json)
            pages += 1

            if not isinstance(body, dict) or "value" not in body:
                if body:
                    records.append(body)
                break

            records.extend(body.get("value") or [])
            url = body.get(NEXT_LINK)
            # Continuation links are plain GETs
            method, json = "GET", None

        logger.debug(f"{uri}: {len(records)} records from {pages} page(s)")
        return records

    async def request(
        self,
        method: str,
        uri: str,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Single request, no pagination. Same retry rules as call()."""
        self._require_connected()
        body = await self._send_with_retry(method, self.resolve(uri), json=json)
        return body if isinstance(body, dict) else {}

    async def report(
        self,
        uri: str,
        filter: Optional[str] = None,
        select: Optional[Sequence[str]] = None,
        top: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Call a synchronous report endpoint (POST, result inline).

        When top is given, pages with skip until TotalRowCount is reached.

        Returns:
            Report rows as dicts keyed by column name
        """
        self._require_connected()

        payload: Dict[str, Any] = {}
        if filter:
            payload["filter"] = filter
        if select:
            payload["select"] = list(select)
        if top:
            payload["top"] = top

        rows: List[Dict[str, Any]] = []
        while True:
            if top:
                payload["skip"] = len(rows)
            body = await self._send_with_retry("POST", self.resolve(uri), json=payload)
            page = rows_from_table(body if isinstance(body, dict) else {})
            rows.extend(page)

            total = body.get("TotalRowCount") if isinstance(body, dict) else None
            if not top or not page or total is None or len(rows) >= int(total):
                break

        return rows

    async def download(self, url: str) -> bytes:
        """
        Fetch a pre-signed download URL.

        No bearer token is sent; retry classification matches call().
        """
        self._require_connected()
        return await self._send_with_retry("GET", url, raw=True, authenticate=False)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_connected(self) -> None:
        if not self.session.connected:
            raise NotConnectedError()

    def _retry_delay(self, attempt: int, retry_after: Optional[float]) -> float:
        if retry_after is not None:
            return min(retry_after, self.backoff.cap)
        return self.backoff.delay(attempt)

    async def _send_with_retry(
        self,
        method: str,
        url: str,
        json: Optional[Dict[str, Any]] = None,
        raw: bool = False,
        authenticate: bool = True,
    ) -> Union[Dict[str, Any], bytes]:
        last_error: Optional[RetriableTransportError] = None

        for attempt in range(self.max_retries):
            try:
                return await self._send(method, url, attempt, json=json, raw=raw, authenticate=authenticate)
            except RetriableTransportError as e:
                last_error = e
                logger.warning(
                    f"{method} {url} failed (attempt {attempt + 1}/{self.max_retries}): {e}"
                )
                if attempt < self.max_retries - 1:
                    delay = self._retry_delay(attempt, e.retry_after)
                    logger.debug(f"Backing off {delay} seconds")
                    await self._sleep(delay)

        raise MaxRetriesExceededError(self.max_retries, last_error)

    async def _send(
        self,
        method: str,
        url: str,
        attempt: int,
        json: Optional[Dict[str, Any]] = None,
        raw: bool = False,
        authenticate: bool = True,
    ) -> Union[Dict[str, Any], bytes]:
        http = await self._get_http()
        headers = {}
        if authenticate:
            headers["Authorization"] = f"Bearer {await self.session.get_token()}"

        logger.debug(f"Attempting {method} {url} (attempt {attempt + 1}/{self.max_retries})")

        try:
            async with http.request(method, url, json=json, headers=headers) as response:
                status = response.status
                retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                payload = await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RetriableTransportError(f"Connection error: {e!r}", url=url) from e

        if 200 <= status < 300:
            logger.debug(f"{method} {url} returned {status}")
            if raw:
                return payload
            return self._decode(payload, url)

        try:
            body = jsonlib.loads(payload) if payload else {}
        except ValueError:
            body = {"error": payload.decode("utf-8", errors="replace")[:500]}
        if not isinstance(body, dict):
            body = {"error": body}
        message = _error_message(status, body)

        if _is_retriable(status):
            raise RetriableTransportError(
                message, status_code=status, response=body, url=url, retry_after=retry_after
            )

        logger.warning(f"{method} {url} returned {status}, not retrying")
        raise NonRetriableTransportError(message, status_code=status, response=body, url=url)

    @staticmethod
    def _decode(payload: bytes, url: str) -> Dict[str, Any]:
        if not payload:
            return {}
        try:
            # utf-8-sig: report endpoints stream JSON with a BOM
            body = jsonlib.loads(payload.decode("utf-8-sig"))
        except (UnicodeDecodeError, ValueError) as e:
            raise ParseError(f"Invalid JSON from {url}: {e}") from e
        return body if isinstance(body, dict) else {"value": body}
