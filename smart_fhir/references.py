"""
Reference resolution.

A FHIR reference (`{"reference": "Patient/123"}`) is resolved, in order, from:

1. the owning resource's `contained` list, for `#id` references
2. the entries of a bundle the caller already holds
3. the caller-supplied cache (absolute URL -> resource)
4. the server, with a GET on the absolute URL
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from .clients.pipeline import Descriptor, FhirResponse, Handler, Middleware
from .exceptions import ContainedResourceNotFoundError

CONTAINED = re.compile(r"^#(.*)")
_ABSOLUTE = re.compile(r"^https?://")


def absolute_url(base_url: str | None, reference: str) -> str:
    if _ABSOLUTE.match(reference):
        return reference
    return f"{(base_url or '').rstrip('/')}/{reference.lstrip('/')}"


def _resolve_contained(reference: str, resource: Mapping[str, Any] | None) -> Any:
    match = CONTAINED.match(reference)
    contained_id = match.group(1) if match else reference
    for candidate in (resource or {}).get("contained") or []:
        if candidate.get("id") == contained_id:
            return candidate
    return None


def _from_bundle(bundle: Mapping[str, Any] | None, url: str) -> Any:
    for entry in (bundle or {}).get("entry") or []:
        if entry.get("fullUrl") == url or entry.get("id") == url:
            return entry.get("resource", entry)
    return None


def resolve_locally(req: Descriptor) -> Any:
    """
    Resolve `req["reference"]` without touching the network.

    Returns None when the reference is missing or not found locally.
    """
    reference = req.get("reference") or {}
    target = reference.get("reference") if isinstance(reference, Mapping) else None
    if not target:
        return None
    if CONTAINED.match(target):
        return _resolve_contained(target, req.get("resource"))
    url = absolute_url(req.get("base_url"), target)
    found = _from_bundle(req.get("bundle"), url)
    if found is not None:
        return found
    cache = req.get("cache")
    if cache is not None:
        return cache.get(url)
    return None


def _resolve_transform(handler: Handler) -> Handler:
    async def run(req: Descriptor) -> Any:
        reference = req.get("reference") or {}
        target = reference.get("reference") if isinstance(reference, Mapping) else None
        found = resolve_locally(req)

        if found is not None or not target:
            deferred = req["defer"]()
            deferred.resolve(
                None
                if found is None
                else FhirResponse(data=found, status=200, config=req, local=True)
            )
            return await deferred.promise

        if CONTAINED.match(target):
            raise ContainedResourceNotFoundError(target)

        req["url"] = absolute_url(req.get("base_url"), target)
        req["data"] = None
        return await handler(req)

    return run


resolve_reference = Middleware(_resolve_transform)
