"""
Internal request pipeline primitives.

Requests are built as a mutable descriptor (a plain dict) threaded through a
chain of middleware before reaching the transport. A middleware is a function
that takes the next handler and returns a new handler; `Middleware` wraps such a
function so chains read left to right:

    chain = set_method("GET").then(Path("base_url").slash(":type"))
    handler = chain.end(transport)
    response = await handler({"base_url": "https://fhir.example", "type": "Patient"})

`m1.then(m2).end(h)` is `m1(m2(h))`: the left middleware runs first and sees the
descriptor before the right one does.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeAlias

Descriptor: TypeAlias = dict[str, Any]
Handler: TypeAlias = Callable[[Descriptor], Awaitable[Any]]
Transform: TypeAlias = Callable[[Handler], Handler]


@dataclass(slots=True)
class FhirResponse:
    """
    Result of a pipeline call.

    Attributes:
        data: Decoded body (JSON as dict/list, text, or raw bytes)
        status: HTTP status code
        headers: Response headers
        config: The request descriptor that produced this response
        local: True when the value was resolved without a network call
    """

    data: Any = None
    status: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    config: Descriptor = field(default_factory=dict)
    local: bool = False


class Middleware:
    """Composable request transform."""

    __slots__ = ("_transform",)

    def __init__(self, transform: Transform):
        self._transform = transform

    def __call__(self, handler: Handler) -> Handler:
        return self._transform(handler)

    def then(self, next: Middleware | Transform) -> Middleware:
        """Return a middleware that runs `self` around `next`."""
        inner = as_middleware(next)
        outer = self

        def combined(handler: Handler) -> Handler:
            return outer(inner(handler))

        return Middleware(combined)

    def end(self, handler: Handler) -> Handler:
        """Terminate the chain with `handler` (usually the transport)."""
        return self(handler)

    @staticmethod
    def identity() -> Middleware:
        return Middleware(lambda handler: handler)


def as_middleware(value: Middleware | Transform) -> Middleware:
    if isinstance(value, Middleware):
        return value
    if not callable(value):
        raise TypeError(f"Expected a middleware or transform function, got {type(value).__name__}")
    return Middleware(value)


def compose(middlewares: Sequence[Middleware | Transform], terminal: Handler) -> Handler:
    chain = Middleware.identity()
    for middleware in middlewares:
        chain = chain.then(middleware)
    return chain.end(terminal)


# =============================================================================
# Dotted-path access
# =============================================================================


def get_path(obj: Any, path: str) -> Any:
    """Read `a.b.c` from nested mappings; returns None when any step is missing."""
    current = obj
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        else:
            return None
        if current is None:
            return None
    return current


def assign_path(obj: MutableMapping[str, Any], path: str, value: Any) -> None:
    """Write `value` at `a.b.c`, creating intermediate dicts as needed."""
    parts = path.split(".")
    current = obj
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, MutableMapping):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = value


# =============================================================================
# Attribute setters
# =============================================================================


def set_attr(path: str, value: Any) -> Middleware:
    """
    Set `path` on the descriptor before continuing.

    `value` may be a literal or a callable receiving the descriptor. A computed
    value of None leaves the descriptor untouched.
    """

    def transform(handler: Handler) -> Handler:
        async def run(req: Descriptor) -> Any:
            computed = value(req) if callable(value) else value
            if computed is not None:
                assign_path(req, path, computed)
            return await handler(req)

        return run

    return Middleware(transform)


def set_header(name: str, value: Any) -> Middleware:
    return set_attr(f"headers.{name}", value)


def set_method(method: str) -> Middleware:
    return set_attr("method", method.upper())


def simple(fn: Callable[[Descriptor], Descriptor | None]) -> Middleware:
    """Rewrite the descriptor with `fn` (which may mutate in place and return None)."""

    def transform(handler: Handler) -> Handler:
        async def run(req: Descriptor) -> Any:
            updated = fn(req)
            return await handler(req if updated is None else updated)

        return run

    return Middleware(transform)
