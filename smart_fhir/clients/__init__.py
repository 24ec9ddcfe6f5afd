"""Transport-level building blocks: pipeline primitives, adapter, httpx transport."""

from .adapter import Adapter, Deferred, Transport, defer
from .http import HttpxTransport
from .pipeline import (
    Descriptor,
    FhirResponse,
    Handler,
    Middleware,
    as_middleware,
    assign_path,
    compose,
    get_path,
    set_attr,
    set_header,
    set_method,
    simple,
)

__all__ = [
    "Adapter",
    "Deferred",
    "Descriptor",
    "FhirResponse",
    "Handler",
    "HttpxTransport",
    "Middleware",
    "Transport",
    "as_middleware",
    "assign_path",
    "compose",
    "defer",
    "get_path",
    "set_attr",
    "set_header",
    "set_method",
    "simple",
]
