"""
Collaborators injected into every request: a deferred factory and a transport.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from .pipeline import Descriptor, FhirResponse


class Transport(Protocol):
    def __call__(self, req: Descriptor) -> Awaitable[FhirResponse]: ...


class Deferred:
    """A settle-once future with `resolve`/`reject` handles."""

    __slots__ = ("_future",)

    def __init__(self, future: asyncio.Future[Any]):
        self._future = future

    @property
    def promise(self) -> asyncio.Future[Any]:
        return self._future

    def resolve(self, value: Any = None) -> None:
        if not self._future.done():
            self._future.set_result(value)

    def reject(self, error: BaseException) -> None:
        if not self._future.done():
            self._future.set_exception(error)


def defer() -> Deferred:
    """Create a `Deferred` bound to the running event loop."""
    return Deferred(asyncio.get_running_loop().create_future())


async def maybe_await(value: Any) -> Any:
    """Await `value` if it is awaitable; callbacks may be plain or async."""
    if inspect.isawaitable(value):
        return await value
    return value


def _default_transport() -> Transport:
    from .http import HttpxTransport

    return HttpxTransport()


@dataclass(slots=True)
class Adapter:
    """Bundle of the transport and deferred factory handed to request pipelines."""

    http: Transport = field(default_factory=_default_transport)
    defer: Callable[[], Deferred] = defer

    async def aclose(self) -> None:
        close = getattr(self.http, "aclose", None)
        if close is not None:
            await close()
