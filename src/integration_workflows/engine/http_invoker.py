"""HTTP endpoint invoker used by Endpoint stages.

Features:
- Any HTTP method (GET, POST, PUT, DELETE, PATCH, ...)
- URL built from the resolved base URL and the stage endpoint path
- Query parameters URL-encoded, headers passed through
- ``Authorization: Bearer`` values cleaned of stray quotes and whitespace
- Request body sent as text with its Content-Type (default application/json)
- Response headers case-insensitive, JSON body parsed when possible

Network failures and timeouts raise TransportError so the endpoint handler
can count them against retry and circuit breaker policies.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from .config import get_http_timeout
from .exceptions import TransportError

logger = logging.getLogger(__name__)

_BEARER_PREFIX = "Bearer "


@dataclass
class ResponseContext:
    """
    Response data reachable through ``{{response.*}}`` tokens.

    Attributes:
        status: HTTP status code
        body: Raw response text
        headers: Case-insensitive response headers
        json_body: Parsed JSON body (only meaningful when has_json is True)
        has_json: Whether the body parsed as JSON
    """

    status: int
    body: str = ""
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    json_body: Any = None
    has_json: bool = False

    @classmethod
    def from_text(
        cls, status: int, body: str, headers: dict[str, str] | httpx.Headers | None = None
    ) -> ResponseContext:
        """Build a response context, parsing the body as JSON when it is JSON."""
        json_body: Any = None
        has_json = False
        if body and body.strip():
            try:
                json_body = json.loads(body)
                has_json = True
            except json.JSONDecodeError:
                pass
        return cls(
            status=status,
            body=body,
            headers=httpx.Headers(headers or {}),
            json_body=json_body,
            has_json=has_json,
        )


@dataclass
class EndpointInvocationResult:
    """Response plus the request that produced it (for failure logging)."""

    response: ResponseContext
    request_url: str
    request_method: str
    request_body: str | None = None


def build_url(base_url: str, endpoint: str, query: dict[str, str] | None = None) -> str:
    """Join base URL and endpoint path, appending an encoded query string."""
    url = f"{base_url.rstrip('/')}/{endpoint.lstrip('/')}"
    if query:
        parts = [f"{quote(k, safe='')}={quote(v, safe='')}" for k, v in query.items()]
        url = f"{url}?{'&'.join(parts)}"
    return url


def normalize_authorization(value: str) -> str:
    """Strip quotes and whitespace around a bearer token."""
    if not value.lower().startswith(_BEARER_PREFIX.lower()):
        return value
    token = value[len(_BEARER_PREFIX) :].strip("\"' \r\n")
    return f"{_BEARER_PREFIX}{token}"


class HttpEndpointInvoker:
    """
    Sends one HTTP request per call using httpx.AsyncClient.

    A client may be injected (tests, shared connection pools); otherwise a
    short-lived client is created per request with the configured timeout.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ) -> None:
        self._client = client
        self._timeout = timeout if timeout is not None else get_http_timeout()

    async def invoke(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        body: str | None = None,
    ) -> EndpointInvocationResult:
        """
        Send the request and capture the response.

        Args:
            method: HTTP verb
            url: Absolute URL (query string already encoded)
            headers: Resolved request headers
            body: Resolved request body (None or empty for no body)

        Returns:
            EndpointInvocationResult with response and request details

        Raises:
            TransportError: Network failure or timeout
        """
        request_headers: dict[str, str] = {}
        content_type: str | None = None
        for name, value in (headers or {}).items():
            if name.lower() == "authorization":
                value = normalize_authorization(value)
            if name.lower() == "content-type":
                content_type = value
            else:
                request_headers[name] = value

        content: bytes | None = None
        if body:
            content = body.encode("utf-8")
            request_headers["Content-Type"] = content_type or "application/json"
        elif content_type is not None:
            content = b""
            request_headers["Content-Type"] = content_type

        try:
            if self._client is not None:
                response = await self._client.request(
                    method.upper(), url, headers=request_headers, content=content
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(
                        method.upper(), url, headers=request_headers, content=content
                    )
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timeout after {self._timeout}s: {url}") from e
        except httpx.TransportError as e:
            raise TransportError(f"Network error for {url}: {e}") from e

        logger.debug(f"{method.upper()} {url} -> {response.status_code}")
        return EndpointInvocationResult(
            response=ResponseContext.from_text(
                response.status_code, response.text, response.headers
            ),
            request_url=url,
            request_method=method.upper(),
            request_body=body or None,
        )


__all__ = [
    "EndpointInvocationResult",
    "HttpEndpointInvoker",
    "ResponseContext",
    "build_url",
    "normalize_authorization",
]
