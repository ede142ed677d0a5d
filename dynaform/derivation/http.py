"""
DYNAFORM HTTP Transport

Boundary between the HTTP strategy and the network.

resolve_request() turns an HttpRequestConfig plus the current scope into a
concrete ResolvedHttpRequest. A transport is any async callable taking that
request and returning the decoded response body; HttpxTransport is the
default, backed by httpx.AsyncClient. The engine does no retries,
authentication or caching.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import quote
import logging
import re

import httpx

from dynaform.core.paths import UNDEFINED
from dynaform.errors.exceptions import StrategyExecutionError
from dynaform.expressions.evaluator import EvaluationScope, evaluate_expression, to_string

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


@dataclass
class ResolvedHttpRequest:
    """A concrete request ready for a transport."""
    method: str
    url: str
    params: Dict[str, Any] = field(default_factory=dict)
    body: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "url": self.url,
            "params": dict(self.params),
            "body": dict(self.body) if self.body is not None else None,
            "headers": dict(self.headers),
        }


HttpTransport = Callable[[ResolvedHttpRequest], Awaitable[Any]]


def _plain(value: Any) -> Any:
    """JSON-safe form of an evaluated value."""
    if value is UNDEFINED:
        return None
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def resolve_request(config: Any, scope: EvaluationScope) -> ResolvedHttpRequest:
    """
    Evaluate the expressions of an HttpRequestConfig.

    Query parameters that evaluate to a missing value are dropped; URL
    placeholders are percent-encoded.
    """
    path_values = {
        name: to_string(evaluate_expression(expression, scope))
        for name, expression in config.path_params.items()
    }

    def substitute(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name not in path_values:
            return match.group(0)
        return quote(path_values[name], safe="")

    url = _PLACEHOLDER_RE.sub(substitute, config.url)

    params: Dict[str, Any] = {}
    for name, expression in config.query_params.items():
        value = evaluate_expression(expression, scope)
        if value is UNDEFINED or value is None:
            continue
        params[name] = to_string(value) if not isinstance(value, (str, int, bool)) else value

    body = None
    if config.body is not None:
        body = {name: _plain(evaluate_expression(expression, scope)) for name, expression in config.body.items()}

    return ResolvedHttpRequest(
        method=config.method,
        url=url,
        params=params,
        body=body,
        headers=dict(config.headers),
    )


class HttpxTransport:
    """
    Default transport on httpx.AsyncClient.

    Non-2xx responses and transport errors raise StrategyExecutionError with
    code HTTP_FAILED.

    Usage:
        transport = HttpxTransport(base_url="https://api.example.com", timeout_seconds=5)
        data = await transport(ResolvedHttpRequest("GET", "/cities", {"zip": "10001"}))
        await transport.close()
    """

    def __init__(
        self,
        base_url: str = "",
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def __call__(self, request: ResolvedHttpRequest) -> Any:
        client = self._get_client()
        try:
            response = await client.request(
                request.method,
                request.url,
                params=request.params or None,
                json=request.body,
                headers=request.headers or None,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise StrategyExecutionError(
                f"{request.method} {request.url} returned status {e.response.status_code}",
                code="HTTP_FAILED",
            ) from e
        except httpx.HTTPError as e:
            raise StrategyExecutionError(f"{request.method} {request.url} failed: {e}", code="HTTP_FAILED") from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def close(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
