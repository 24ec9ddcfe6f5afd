"""
URL path builder.

    resource_path = Path("base_url").slash(":type || :resource.resourceType").slash(":id")
    resource_path.resolve({"base_url": "https://x", "type": "Patient", "id": "5"})
    # 'https://x/Patient/5'

A segment is either literal text or an expression `":a || :b"`: each `:name` is
a dotted lookup on the request descriptor and the first non-null value wins.
The root of a path is always a lookup: a bare name like `"base_url"` means
`":base_url"`. Absolute URLs are the only literal roots.

A `Path` is also a middleware that sets `url` on the descriptor.
"""

from __future__ import annotations

import re
from typing import Any

from .clients.pipeline import Descriptor, Handler, Middleware, get_path
from .exceptions import MissingParameterError

_ABSOLUTE_URL = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


def _is_expression(segment: str) -> bool:
    return segment.lstrip().startswith(":")


def resolve_segment(segment: str, req: Descriptor) -> str:
    if not _is_expression(segment):
        return segment
    for alternative in segment.split("||"):
        name = alternative.strip()
        if name.startswith(":"):
            name = name[1:]
        value = get_path(req, name)
        if value is not None:
            return str(value)
    raise MissingParameterError(segment.strip(), req)


class Path(Middleware):
    __slots__ = ("_segments",)

    def __init__(self, root: str, *, _segments: tuple[str, ...] | None = None):
        if _segments is None:
            if not _is_expression(root) and not _ABSOLUTE_URL.match(root):
                root = f":{root}"
            _segments = (root,)
        self._segments = _segments
        super().__init__(self._transform_handler)

    @property
    def segments(self) -> tuple[str, ...]:
        return self._segments

    def slash(self, segment: str) -> Path:
        return Path("", _segments=(*self._segments, segment))

    def resolve(self, req: Descriptor) -> str:
        root, *rest = self._segments
        url = resolve_segment(root, req).rstrip("/")
        for segment in rest:
            url = f"{url}/{resolve_segment(segment, req)}"
        return url

    def _transform_handler(self, handler: Handler) -> Handler:
        async def run(req: Descriptor) -> Any:
            req["url"] = self.resolve(req)
            return await handler(req)

        return run

    def __repr__(self) -> str:
        return f"Path({'/'.join(self._segments)!r})"
