"""
FHIR REST client.

Each operation is a pre-composed middleware chain terminated by the adapter's
transport. Chains are built once per client configuration.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from typing import Any

import httpx

from . import pagination
from .auth import Credential, NoCredential, credential_from_mapping
from .clients.adapter import Adapter
from .clients.http import HttpxTransport
from .clients.pipeline import (
    Descriptor,
    FhirResponse,
    Handler,
    Middleware,
    set_attr,
    set_header,
    set_method,
)
from .config import CredentialsMode, FhirConfig
from .middleware import (
    basic_auth,
    bearer_auth,
    bundle_link_url,
    errors,
    json_data,
    validate_credentials,
    with_patient,
)
from .paths import Path
from .query import paging, search_params
from .references import resolve_reference

logger = logging.getLogger(__name__)

FHIR_JSON = "application/fhir+json"
JSON_PATCH = "application/json-patch+json"


def _terminal(adapter: Adapter) -> Handler:
    async def send(req: Descriptor) -> Any:
        level = logging.INFO if req.get("debug") else logging.DEBUG
        logger.log(level, "%s %s", req.get("method"), req.get("url"))
        transport = req.get("http") or adapter.http
        return await transport(req)

    return send


def build_operations(config: FhirConfig, adapter: Adapter) -> dict[str, Handler]:
    """Assemble the named operation pipelines for one configuration."""
    defaults = (
        set_attr("base_url", config.base_url)
        .then(set_attr("cache", config.cache))
        .then(set_attr("auth", config.auth))
        .then(set_attr("patient", config.patient))
        .then(set_attr("debug", config.debug or None))
        .then(set_attr("credentials", config.credentials))
        .then(set_attr("defer", lambda _req: adapter.defer))
        .then(set_attr("http", lambda _req: adapter.http))
    )
    if config.headers:
        extra_headers = dict(config.headers)
        defaults = defaults.then(
            set_attr("headers", lambda req: {**extra_headers, **(req.get("headers") or {})})
        )

    base = (
        defaults.then(errors)
        .then(basic_auth)
        .then(bearer_auth)
        .then(validate_credentials)
        .then(json_data)
        .then(set_header("Accept", FHIR_JSON))
        .then(set_header("Content-Type", FHIR_JSON))
    )
    get = base.then(set_method("GET"))
    post = base.then(set_method("POST"))
    put = base.then(set_method("PUT"))
    patch = base.then(set_method("PATCH"))
    delete = base.then(set_method("DELETE"))

    base_path = Path("base_url")
    type_path = base_path.slash(":type || :resource.resourceType")
    type_history_path = type_path.slash("_history")
    resource_path = type_path.slash(":id || :resource.id")
    resource_history_path = resource_path.slash("_history")
    vread_path = resource_history_path.slash(":version_id || :resource.meta.versionId")

    return_representation = set_header("Prefer", "return=representation")
    http = _terminal(adapter)

    chains: dict[str, Middleware] = {
        "conformance": get.then(base_path.slash("metadata")),
        "document": post.then(base_path.slash("Document")),
        "profile": get.then(base_path.slash("Profile").slash(":type")),
        "transaction": post.then(base_path),
        "history": get.then(base_path.slash("_history")).then(paging),
        "type_history": get.then(type_history_path).then(paging),
        "resource_history": get.then(resource_history_path).then(paging),
        "read": get.then(resource_path),
        "vread": get.then(vread_path),
        "delete": delete.then(resource_path).then(return_representation),
        "create": post.then(type_path).then(return_representation),
        "validate": post.then(type_path.slash("_validate")),
        "search": get.then(type_path).then(with_patient).then(search_params).then(paging),
        "update": put.then(resource_path).then(return_representation),
        "patch": (
            patch.then(resource_path)
            .then(return_representation)
            .then(set_header("Content-Type", JSON_PATCH))
        ),
        "next_page": get.then(bundle_link_url("next")),
        "prev_page": get.then(bundle_link_url("prev")),
        "resolve": get.then(resolve_reference),
    }
    return {name: chain.end(http) for name, chain in chains.items()}


class FhirClient:
    """
    Asynchronous FHIR client.

    Operations take request fields as keyword arguments and return a
    `FhirResponse`; errors surface as `FhirError` subclasses.

    Example:
        ```python
        async with FhirClient("https://fhir.example/r4", auth=BearerCredential("t")) as fhir:
            patient = await fhir.read(type="Patient", id="123")
            bundle = await fhir.search(
                type="Observation",
                query={"code": "8302-2", "$sort": [["date", "desc"]]},
                count=50,
            )
            observations = await fhir.fetch_all(type="Observation", query={"code": "8302-2"})
        ```

    Request fields understood by the operations:
        type: Resource type (falls back to `resource["resourceType"]`)
        id: Resource id (falls back to `resource["id"]`)
        version_id: Version id for `vread` (falls back to `resource["meta"]["versionId"]`)
        resource: Resource body for create/update/validate
        bundle: Bundle body for `transaction`, or the current page for paging
        data: Raw body (e.g. a JSON Patch list)
        query: Structured search query (see `smart_fhir.query`)
        count / since: Paging parameters (`_count` / `_since`)
        reference: Reference object for `resolve`
        headers: Extra request headers
    """

    def __init__(
        self,
        base_url: str,
        *,
        auth: Credential | Mapping[str, Any] | None = None,
        patient: str | None = None,
        cache: Mapping[str, Any] | None = None,
        debug: bool = False,
        credentials: CredentialsMode | None = None,
        headers: Mapping[str, str] | None = None,
        adapter: Adapter | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: FHIR service root
            auth: Credential descriptor, or a mapping like `{"type": "bearer", "token": ...}`
            patient: Patient id scoping searches on patient-bearing resource types
            cache: Absolute resource URL -> resource, consulted by `resolve`
            debug: Log every request at INFO
            credentials: Credentials mode (`same-origin` or `include`)
            headers: Extra headers sent with every request
            adapter: Transport + deferred collaborators; a default httpx adapter is created
                (and owned) when omitted
            timeout: Request timeout for the default transport
            transport: httpx transport for the default adapter (e.g. `httpx.MockTransport`)
        """
        config = FhirConfig(
            base_url=base_url,
            auth=credential_from_mapping(auth),
            patient=patient,
            cache=cache,
            debug=debug,
            credentials=credentials,
            headers=dict(headers or {}),
        )
        self._owns_adapter = adapter is None
        if adapter is None:
            adapter = Adapter(http=HttpxTransport(timeout=timeout, transport=transport))
        self._init(config, adapter)

    def _init(self, config: FhirConfig, adapter: Adapter) -> None:
        self._config = config
        self._adapter = adapter
        self._operations = build_operations(config, adapter)

    @classmethod
    def from_config(cls, config: FhirConfig, *, adapter: Adapter | None = None) -> FhirClient:
        client = cls.__new__(cls)
        client._owns_adapter = adapter is None
        client._init(config, adapter or Adapter())
        return client

    async def __aenter__(self) -> FhirClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the default transport (no-op for an injected adapter)."""
        if self._owns_adapter:
            await self._adapter.aclose()

    @property
    def config(self) -> FhirConfig:
        return self._config

    @property
    def adapter(self) -> Adapter:
        return self._adapter

    @property
    def base_url(self) -> str:
        return self._config.base_url

    @property
    def auth(self) -> Credential:
        return self._config.auth or NoCredential()

    def scoped(self, **changes: Any) -> FhirClient:
        """Return a client sharing this client's adapter with config fields replaced."""
        if "auth" in changes:
            changes["auth"] = credential_from_mapping(changes["auth"])
        return FhirClient.from_config(
            dataclasses.replace(self._config, **changes), adapter=self._adapter
        )

    async def _call(self, operation: str, params: Mapping[str, Any]) -> Any:
        req = dict(params)
        if isinstance(req.get("headers"), Mapping):
            req["headers"] = dict(req["headers"])
        return await self._operations[operation](req)

    # =========================================================================
    # Server-level operations
    # =========================================================================

    async def conformance(self, **params: Any) -> FhirResponse:
        """GET `[base]/metadata` (the CapabilityStatement)."""
        return await self._call("conformance", params)

    async def transaction(self, **params: Any) -> FhirResponse:
        """POST a transaction/batch `bundle` to `[base]`."""
        return await self._call("transaction", params)

    async def document(self, **params: Any) -> FhirResponse:
        return await self._call("document", params)

    async def profile(self, **params: Any) -> FhirResponse:
        return await self._call("profile", params)

    async def history(self, **params: Any) -> FhirResponse:
        """GET `[base]/_history`."""
        return await self._call("history", params)

    # =========================================================================
    # Type-level operations
    # =========================================================================

    async def search(self, **params: Any) -> FhirResponse:
        """
        Search `[base]/[type]`.

        `query` is linearized into search parameters; when the client carries a
        patient context, searches on patient-bearing types are scoped to it.
        """
        return await self._call("search", params)

    async def create(self, **params: Any) -> FhirResponse:
        """POST `resource` to `[base]/[type]`."""
        return await self._call("create", params)

    async def validate(self, **params: Any) -> FhirResponse:
        return await self._call("validate", params)

    async def type_history(self, **params: Any) -> FhirResponse:
        return await self._call("type_history", params)

    # =========================================================================
    # Instance-level operations
    # =========================================================================

    async def read(self, **params: Any) -> FhirResponse:
        """GET `[base]/[type]/[id]`."""
        return await self._call("read", params)

    async def vread(self, **params: Any) -> FhirResponse:
        """GET `[base]/[type]/[id]/_history/[version_id]`."""
        return await self._call("vread", params)

    async def update(self, **params: Any) -> FhirResponse:
        """PUT `resource` to `[base]/[type]/[id]`."""
        return await self._call("update", params)

    async def patch(self, **params: Any) -> FhirResponse:
        """PATCH `[base]/[type]/[id]` with a JSON Patch document in `data`."""
        return await self._call("patch", params)

    async def delete(self, **params: Any) -> FhirResponse:
        return await self._call("delete", params)

    async def resource_history(self, **params: Any) -> FhirResponse:
        return await self._call("resource_history", params)

    # =========================================================================
    # Navigation
    # =========================================================================

    async def next_page(self, **params: Any) -> FhirResponse:
        """Follow the `next` link of `bundle`; raises `MissingLinkError` when absent."""
        return await self._call("next_page", params)

    async def prev_page(self, **params: Any) -> FhirResponse:
        """Follow the `prev` link of `bundle`; raises `MissingLinkError` when absent."""
        return await self._call("prev_page", params)

    async def resolve(self, **params: Any) -> FhirResponse | None:
        """
        Resolve `reference` (a `{"reference": ...}` object).

        Contained, bundled and cached resources resolve without a network call.
        Returns None when `reference` carries no `.reference`.
        """
        return await self._call("resolve", params)

    # =========================================================================
    # Bulk fetch
    # =========================================================================

    def iter_pages(self, **params: Any) -> AsyncIterator[FhirResponse]:
        """Iterate search result pages, following `next` links."""
        return pagination.iter_pages(self, params)

    async def drain(
        self,
        params: Mapping[str, Any],
        on_page: Callable[[list[dict[str, Any]]], Any],
        on_done: Callable[[], Any] | None = None,
        on_fail: Callable[[BaseException], Any] | None = None,
    ) -> None:
        await pagination.drain(self, params, on_page, on_done, on_fail)

    async def fetch_all(self, **params: Any) -> list[dict[str, Any]]:
        """Search and collect the resources of every page."""
        return await pagination.fetch_all(self, params)

    async def fetch_all_with_references(
        self,
        resolve_params: Sequence[str] | None = None,
        **params: Any,
    ) -> pagination.ReferencedResults:
        """
        Search and resolve the listed references (e.g. `"Observation.subject"`)
        across the first page's resources.
        """
        return await pagination.fetch_all_with_references(self, params, resolve_params or ())
