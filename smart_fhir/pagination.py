"""
Bundle pagination and bulk fetch.

Pages are fetched strictly one after another. A failed `next_page` call ends
the iteration instead of raising: a bundle without a `next` link and a network
failure mid-pagination look the same to the caller. The failure is logged so
the two can be told apart.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .clients.adapter import maybe_await
from .clients.pipeline import FhirResponse
from .exceptions import MissingLinkError

if TYPE_CHECKING:
    from .client import FhirClient

logger = logging.getLogger(__name__)


def _entries(response: FhirResponse | None) -> list[dict[str, Any]]:
    if response is None or not isinstance(response.data, Mapping):
        return []
    return list(response.data.get("entry") or [])


async def iter_pages(client: FhirClient, params: Mapping[str, Any]) -> AsyncIterator[FhirResponse]:
    """
    Yield the first search page, then every page reached through `next` links.

    Errors from the initial search propagate.
    """
    page = await client.search(**params)
    while True:
        yield page
        try:
            page = await client.next_page(bundle=page.data)
        except MissingLinkError:
            logger.debug("no next link; pagination complete")
            return
        except Exception as exc:
            logger.warning("next page request failed, treating as end of results: %s", exc)
            return


async def drain(
    client: FhirClient,
    params: Mapping[str, Any],
    on_page: Callable[[list[dict[str, Any]]], Any],
    on_done: Callable[[], Any] | None = None,
    on_fail: Callable[[BaseException], Any] | None = None,
) -> None:
    """
    Walk every page of a search, calling `on_page(entries)` for each.

    `on_done` runs once after the last page. When the initial search fails,
    `on_fail(error)` is called; without `on_fail` the error is raised.
    Callbacks may be plain functions or coroutine functions.
    """
    pages = iter_pages(client, params)
    try:
        async for page in pages:
            await maybe_await(on_page(_entries(page)))
    except Exception as exc:
        if on_fail is None:
            raise
        await maybe_await(on_fail(exc))
        return
    finally:
        await pages.aclose()
    if on_done is not None:
        await maybe_await(on_done())


async def fetch_all(client: FhirClient, params: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Collect the `resource` of every entry across all pages."""
    results: list[dict[str, Any]] = []

    def collect(entries: list[dict[str, Any]]) -> None:
        results.extend(entry["resource"] for entry in entries if "resource" in entry)

    await drain(client, params, collect)
    return results


def reference_id(resource: Mapping[str, Any], reference: Mapping[str, Any]) -> str:
    """
    Key used for resolved references.

    Contained (`#id`) references are qualified with the owning resource so ids
    from different resources do not collide.
    """
    target = str(reference.get("reference", ""))
    if target.startswith("#"):
        return f"{resource.get('resourceType')}/{resource.get('id')}{target}"
    return target


@dataclass
class ReferencedResults:
    """
    Search results together with the resources their references point to.

    Attributes:
        bundle: The first search page
        resources: Resources of the first page's entries
        references: Normalized reference id -> resolved resource
    """

    bundle: Any
    resources: list[dict[str, Any]] = field(default_factory=list)
    references: dict[str, Any] = field(default_factory=dict)

    def refs(self, resource: Mapping[str, Any], reference: Mapping[str, Any]) -> Any:
        """Look up the resolved target of `reference` as seen from `resource`."""
        return self.references.get(reference_id(resource, reference))


async def fetch_all_with_references(
    client: FhirClient,
    params: Mapping[str, Any],
    resolve_params: Sequence[str],
) -> ReferencedResults:
    """
    Search, then resolve references named as `"ResourceType.field"` across the
    first page's resources.

    References are resolved one at a time from a work stack; each distinct
    reference id is resolved once.
    """
    response = await client.search(**params)
    bundle = response.data if isinstance(response.data, Mapping) else {}
    resources = [entry["resource"] for entry in _entries(response) if "resource" in entry]

    targets: list[tuple[str, str]] = []
    for resolve_param in resolve_params:
        target_type, _, target_field = resolve_param.partition(".")
        targets.append((target_type, target_field))

    results = ReferencedResults(bundle=bundle, resources=resources)
    queued: set[str] = set()
    stack: list[tuple[str, dict[str, Any], dict[str, Any]]] = []
    for resource in resources:
        for target_type, target_field in targets:
            reference = resource.get(target_field)
            if resource.get("resourceType") != target_type or not isinstance(reference, Mapping):
                continue
            if not reference.get("reference"):
                continue
            ref_id = reference_id(resource, reference)
            if ref_id in queued:
                continue
            queued.add(ref_id)
            stack.append((ref_id, resource, dict(reference)))

    while stack:
        ref_id, resource, reference = stack.pop()
        resolved = await client.resolve(bundle=bundle, resource=resource, reference=reference)
        results.references[ref_id] = resolved.data if resolved is not None else None
    return results
