"""
Default HTTP transport built on httpx.

The transport is the terminal handler of every request pipeline: it receives a
fully built descriptor (`method`, `url`, `headers`, `data`, `params`) and returns
a `FhirResponse`, or raises `TransportError`.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

import httpx

from ..exceptions import TransportError
from .pipeline import Descriptor, FhirResponse

logger = logging.getLogger(__name__)

_BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    content_type = response.headers.get("content-type", "").lower()
    if "json" in content_type:
        try:
            return response.json()
        except json.JSONDecodeError:
            return response.text
    if content_type.startswith("text/") or "xml" in content_type:
        return response.text
    if not content_type:
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return response.content
    return response.content


def _query_params(params: Any) -> list[tuple[str, str]] | None:
    if not params:
        return None
    if isinstance(params, Mapping):
        return [(str(k), str(v)) for k, v in params.items() if v is not None]
    return [(str(k), str(v)) for k, v in params]


class HttpxTransport:
    """
    Async transport callable.

    Args:
        timeout: Request timeout in seconds
        transport: Optional httpx transport (e.g. `httpx.MockTransport` in tests)
        follow_redirects: Follow 3xx responses
        client: Pre-built `httpx.AsyncClient`; the transport will not close it
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        follow_redirects: bool = True,
        client: httpx.AsyncClient | None = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            follow_redirects=follow_redirects,
        )

    async def __aenter__(self) -> HttpxTransport:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __call__(self, req: Descriptor) -> FhirResponse:
        method = str(req.get("method") or "GET").upper()
        url = req.get("url")
        if not url:
            raise TransportError("Request descriptor has no url", config=req)

        headers = {str(k): str(v) for k, v in (req.get("headers") or {}).items() if v is not None}
        content: str | bytes | None = None
        form: Mapping[str, Any] | None = None
        data = req.get("data")
        if method in _BODY_METHODS and data is not None:
            if isinstance(data, Mapping):
                form = {k: v for k, v in data.items() if v is not None}
            else:
                content = data if isinstance(data, (str, bytes)) else json.dumps(data)

        params = _query_params(req.get("params"))
        if params:
            # httpx `params=` would replace a query string already on the url
            url = httpx.URL(url).copy_merge_params(params)

        try:
            response = await self._client.request(
                method,
                url,
                headers=headers,
                content=content,
                data=form,
            )
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, url, type(exc).__name__)
            raise TransportError(f"{method} {url} failed: {exc}", error=exc, config=req) from exc

        body = _decode_body(response)
        if response.status_code >= 400:
            raise TransportError(
                f"{method} {url} returned HTTP {response.status_code}",
                error=response.reason_phrase,
                data=body,
                status=response.status_code,
                config=req,
            )
        return FhirResponse(
            data=body,
            status=response.status_code,
            headers=dict(response.headers),
            config=req,
        )
