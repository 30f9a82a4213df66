"""
Generic outbound HTTP call service — used by ``api-call`` nodes.

Contract: request(url, method, headers?, body?) -> HttpResponse(status, data, headers)
Raises ExternalCallError for non-2xx responses and transport errors.

Transport errors (connect/read failures) can be retried with exponential
backoff via ``http.max_attempts``; HTTP error statuses are never retried.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from config.settings import HttpConfig, get_settings

logger = structlog.get_logger()


class ExternalCallError(Exception):
    """An outbound API call failed (non-2xx status or transport error)."""

    def __init__(self, message: str, url: str = "", status: Optional[int] = None,
                 data: Any = None, retryable: bool = False):
        self.url = url
        self.status = status
        self.data = data
        self.retryable = retryable
        super().__init__(message)


@dataclass
class HttpResponse:
    status: int
    data: Any = None
    headers: dict[str, str] = field(default_factory=dict)


class HttpCallService:
    """
    Async HTTP client for flow-authored API calls.

    Bodies that are objects are sent as JSON; strings are sent verbatim.
    Responses are decoded as JSON when the content type says so, text otherwise.
    """

    def __init__(self, config: HttpConfig = None, transport: httpx.AsyncBaseTransport = None):
        self.config = config or get_settings().http
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                timeout=self.config.timeout_s,
                headers={"User-Agent": self.config.user_agent},
                transport=self._transport,
            )
        return self.client

    async def request(
        self,
        url: str,
        method: str = "GET",
        headers: dict[str, str] = None,
        body: Any = None,
    ) -> HttpResponse:
        method = (method or "GET").upper()
        logger.info("external_call_started", url=url, method=method)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.max_attempts)),
            wait=wait_exponential(multiplier=0.5, max=10),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._send(url, method, headers, body)
        except httpx.TransportError as e:
            logger.error("external_call_transport_error", url=url, error=str(e))
            raise ExternalCallError(f"Transport error calling {url}: {e}", url=url, retryable=True) from e
        except httpx.InvalidURL as e:
            logger.error("external_call_invalid_url", url=url, error=str(e))
            raise ExternalCallError(f"Invalid URL {url!r}: {e}", url=url) from e

        data = self._decode(response)
        if not response.is_success:
            logger.error("external_call_failed", url=url, status=response.status_code)
            raise ExternalCallError(
                f"External API responded with status {response.status_code}",
                url=url, status=response.status_code, data=data,
                retryable=response.status_code >= 500,
            )

        logger.info("external_call_succeeded", url=url, status=response.status_code)
        return HttpResponse(
            status=response.status_code,
            data=data,
            headers=dict(response.headers),
        )

    async def _send(self, url: str, method: str, headers: Optional[dict[str, str]], body: Any) -> httpx.Response:
        client = await self._get_client()
        kwargs: dict[str, Any] = {"headers": dict(headers or {})}
        if body is not None and body != "":
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = str(body)
        return await client.request(method, url, **kwargs)

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                return response.json()
            except ValueError:
                return response.text
        return response.text

    async def close(self):
        if self.client:
            await self.client.aclose()
