"""
Async FHIR REST client with a SMART on FHIR launch helper.

Operations are pipelines of composable request middleware (see
`smart_fhir.clients`); `FhirClient` exposes them as coroutine methods:

    async with FhirClient("https://fhir.example/r4", auth={"type": "bearer", "token": t}) as fhir:
        bundle = await fhir.search(type="Observation", query={"code": "8480-6"})
"""

from __future__ import annotations

from .auth import BasicCredential, BearerCredential, Credential, NoCredential
from .client import FhirClient
from .clients import Adapter, FhirResponse, HttpxTransport, Middleware
from .config import FhirConfig
from .exceptions import (
    AdapterMisconfiguredError,
    AuthorizationFlowError,
    ContainedResourceNotFoundError,
    FhirError,
    LinearizationError,
    MissingLinkError,
    MissingParameterError,
    TransportError,
    UnitConversionError,
)
from .observations import by_code, by_codes, units
from .pagination import ReferencedResults
from .paths import Path
from .query import build_query_string, linearize
from .smart import FlatSessionStore, PerStateSessionStore, SmartClient, SmartLauncher

__version__ = "0.1.0"

__all__ = [
    "Adapter",
    "AdapterMisconfiguredError",
    "AuthorizationFlowError",
    "BasicCredential",
    "BearerCredential",
    "ContainedResourceNotFoundError",
    "Credential",
    "FhirClient",
    "FhirConfig",
    "FhirError",
    "FhirResponse",
    "FlatSessionStore",
    "HttpxTransport",
    "LinearizationError",
    "Middleware",
    "MissingLinkError",
    "MissingParameterError",
    "NoCredential",
    "Path",
    "PerStateSessionStore",
    "ReferencedResults",
    "SmartClient",
    "SmartLauncher",
    "TransportError",
    "UnitConversionError",
    "__version__",
    "build_query_string",
    "by_code",
    "by_codes",
    "linearize",
    "units",
]
