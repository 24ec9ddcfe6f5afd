"""
Search query linearizer.

Turns a structured query mapping into FHIR search parameters:

    build_query_string({"name": "Smith", "birthdate": {"$gt": "1970"}})
    # 'name=Smith&birthdate=gt1970'

    build_query_string({
        "subject": {"$type": "Patient", "name": {"$exact": "Smith"}},
        "code": {"$or": ["1234-5", "6789-0"]},
        "$sort": ["date", ["status", "desc"]],
        "$include": {"Observation": ["subject", "performer"]},
    })

Leaf values:
- strings and numbers produce `param=value`
- lists produce one pipe-joined value
- mappings are expanded: `$and` repeats the parameter, `$or` comma-joins,
  comparison operators prefix the value (`$gt` -> `gt`), any other `$name`
  becomes a `:name` modifier, `$type` qualifies nested chained fields, and
  plain keys chain (`subject.name`)
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

from .clients.pipeline import Descriptor, set_attr
from .exceptions import LinearizationError

logger = logging.getLogger(__name__)

OPERATORS: dict[str, str] = {
    "$gt": "gt",
    "$lt": "lt",
    "$gte": "ge",
    "$lte": "le",
    "$ne": "ne",
    "$eq": "eq",
    "$sa": "sa",
    "$eb": "eb",
    "$ap": "ap",
}

# encodeURIComponent leaves these unescaped
_URI_COMPONENT_SAFE = "-_.!~*'()"


@dataclass(frozen=True)
class QueryTerm:
    """One linearized search parameter."""

    param: str
    value: tuple[Any, ...] = field(default_factory=tuple)
    modifier: str | None = None
    operator: str | None = None

    def render(self) -> str:
        encoded = ",".join(quote(_format_value(v), safe=_URI_COMPONENT_SAFE) for v in self.value)
        return f"{self.param}{self.modifier or ''}={self.operator or ''}{encoded}"


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    return type(value).__name__


def _is_leaf_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float)) and not isinstance(value, bool)


def _linearize_one(param: str, value: Any) -> list[QueryTerm]:
    if isinstance(value, Mapping):
        return _expand_mapping(param, value)
    if _is_leaf_scalar(value):
        return [QueryTerm(param=param, value=(value,))]
    if isinstance(value, (list, tuple)):
        joined = "|".join(_format_value(v) for v in value)
        return [QueryTerm(param=param, value=(joined,))]
    raise LinearizationError(_type_name(value))


def _expand_mapping(param: str, value: Mapping[str, Any]) -> list[QueryTerm]:
    type_suffix = f":{value['$type']}" if value.get("$type") else ""
    terms: list[QueryTerm] = []
    for key, nested in value.items():
        if key == "$and":
            for item in nested:
                terms.extend(_linearize_one(param, item))
        elif key == "$type":
            continue
        elif key == "$or":
            values = tuple(nested) if isinstance(nested, (list, tuple)) else (nested,)
            terms.append(QueryTerm(param=param, value=values))
        elif key in OPERATORS:
            terms.append(QueryTerm(param=param, operator=OPERATORS[key], value=(nested,)))
        elif key.startswith("$"):
            terms.append(QueryTerm(param=param, modifier=":" + key[1:], value=(nested,)))
        else:
            terms.extend(_linearize_one(f"{param}{type_suffix}.{key}", nested))
    return terms


def _linearize_sort(entries: Any) -> list[QueryTerm]:
    if isinstance(entries, str):
        entries = [entries]
    terms: list[QueryTerm] = []
    for entry in entries:
        if isinstance(entry, str):
            terms.append(QueryTerm(param="_sort", value=(entry,)))
        elif isinstance(entry, (list, tuple)) and len(entry) == 2:
            field_name, direction = entry
            terms.append(QueryTerm(param="_sort", value=(field_name,), modifier=f":{direction}"))
        else:
            logger.warning("Dropping malformed $sort entry: %r", entry)
    return terms


def _linearize_include(includes: Mapping[str, Any]) -> list[QueryTerm]:
    terms: list[QueryTerm] = []
    for resource_type, paths in includes.items():
        if isinstance(paths, str):
            paths = [paths]
        for path in paths:
            terms.append(QueryTerm(param="_include", value=(f"{resource_type}.{path}",)))
    return terms


def linearize(query: Mapping[str, Any]) -> list[QueryTerm]:
    """Flatten `query` into search terms, preserving key order."""
    terms: list[QueryTerm] = []
    for key, value in query.items():
        if key == "$sort":
            terms.extend(_linearize_sort(value))
        elif key == "$include":
            terms.extend(_linearize_include(value))
        else:
            terms.extend(_linearize_one(key, value))
    return terms


def render(terms: Sequence[QueryTerm]) -> str:
    return "&".join(term.render() for term in terms)


def build_query_string(query: Mapping[str, Any]) -> str:
    return render(linearize(query))


# =============================================================================
# Middleware
# =============================================================================


def _append_query(url: str, query_string: str) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{query_string}"


def _search_url(req: Descriptor) -> str | None:
    url = req.get("url")
    query = req.get("query")
    if url is None or not query:
        return None
    query_string = build_query_string(query)
    if not query_string:
        return None
    return _append_query(url, query_string)


search_params = set_attr("url", _search_url)


def _paging_url(req: Descriptor) -> str | None:
    # Extends the query string built so far; never replaces it.
    url = req.get("url")
    if url is None:
        return None
    terms = [
        QueryTerm(name, (req[key],))
        for name, key in (("_since", "since"), ("_count", "count"))
        if req.get(key)
    ]
    if not terms:
        return None
    return _append_query(url, render(terms))


paging = set_attr("url", _paging_url)
