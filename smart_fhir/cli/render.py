from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from typing import Any

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .results import CommandResult


@dataclass(frozen=True, slots=True)
class RenderSettings:
    output: str  # "table" | "json"
    quiet: bool
    verbosity: int


def _error_title(error_type: str) -> str:
    mapping = {
        "usage_error": "Usage error",
        "auth_error": "Authorization error",
        "not_found": "Not found",
        "network_error": "Network error",
        "server_error": "Server error",
        "api_error": "API error",
    }
    return mapping.get((error_type or "").strip(), "Error")


def _format_scalar(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _kv_table(obj: dict[str, Any]) -> Table:
    table = Table(show_header=True, header_style="bold")
    table.add_column("field")
    table.add_column("value")
    for key, value in obj.items():
        table.add_row(str(key), _format_scalar(value))
    return table


def _resource_summary(resource: dict[str, Any]) -> str:
    """One-line description of a FHIR resource for table cells."""
    for key in ("code", "type"):
        concept = resource.get(key)
        if isinstance(concept, dict):
            if concept.get("text"):
                return str(concept["text"])
            codings = concept.get("coding") or []
            if codings and isinstance(codings[0], dict):
                return str(codings[0].get("display") or codings[0].get("code") or "")
    names = resource.get("name")
    if isinstance(names, list) and names and isinstance(names[0], dict):
        name = names[0]
        if name.get("text"):
            return str(name["text"])
        given = " ".join(str(part) for part in name.get("given") or [])
        return f"{given} {name.get('family', '')}".strip()
    if isinstance(names, str):
        return names
    return ""


def _resource_table(resources: list[dict[str, Any]]) -> Table:
    table = Table(show_header=True, header_style="bold")
    table.add_column("resourceType")
    table.add_column("id")
    table.add_column("summary")
    for resource in resources:
        table.add_row(
            str(resource.get("resourceType", "")),
            str(resource.get("id", "")),
            _resource_summary(resource),
        )
    return table


def _render_data(data: Any, pagination: dict[str, Any] | None) -> Any:
    if data is None:
        return None
    if isinstance(data, dict) and data.get("resourceType") == "Bundle":
        resources = [
            entry["resource"]
            for entry in data.get("entry") or []
            if isinstance(entry, dict) and isinstance(entry.get("resource"), dict)
        ]
        renderables: list[Any] = [_resource_table(resources)]
        total = data.get("total")
        footer = f"{len(resources):,} shown"
        if total is not None:
            footer += f" of {total:,}"
        if pagination and pagination.get("hasNext"):
            footer += ", more available (use --all or --json)"
        renderables.append(Text(f"({footer})"))
        return Group(*renderables)
    if isinstance(data, list):
        rows = [row for row in data if isinstance(row, dict)]
        return _resource_table(rows)
    if isinstance(data, dict):
        return _kv_table(data)
    return Text(str(data))


def render_result(result: CommandResult, *, settings: RenderSettings) -> int:
    stdout = Console(file=sys.stdout, force_terminal=False)
    stderr = Console(file=sys.stderr, force_terminal=False)

    if settings.output == "json":
        payload = result.model_dump(by_alias=True, mode="json")
        sys.stdout.write(json.dumps(payload, ensure_ascii=False) + "\n")
        return 0

    if not result.ok:
        if result.error is not None:
            stderr.print(f"{_error_title(result.error.type)}: {result.error.message}")
            if not settings.quiet:
                if result.error.hint:
                    stderr.print(f"Hint: {result.error.hint}")
                elif result.error.type == "usage_error":
                    stderr.print(f"Hint: run `smart-fhir {result.command} --help`")
                if result.error.details and settings.verbosity >= 1:
                    stderr.print(
                        Panel.fit(
                            Text(json.dumps(result.error.details, ensure_ascii=False, indent=2))
                        )
                    )
        else:
            stderr.print("Error")
        return 0

    renderable: Any
    data = result.data
    if result.command == "version" and isinstance(data, dict):
        renderable = Text(str(data.get("version", "")), style="bold")
    elif result.command == "config path" and isinstance(data, dict):
        renderable = Text(str(data.get("path", "")))
    elif result.command == "launch authorize" and isinstance(data, dict):
        renderable = Panel.fit(
            Text(str(data.get("authorizeUrl", ""))), title=f"state {data.get('state', '')}"
        )
    elif result.command == "launch auth-type" and isinstance(data, dict):
        renderable = Text(str(data.get("authType", "")), style="bold")
    elif result.command == "read" and isinstance(data, dict) and settings.verbosity < 1:
        renderable = _kv_table({k: v for k, v in data.items() if not isinstance(v, (dict, list))})
    else:
        renderable = _render_data(data, result.meta.pagination)

    if renderable is not None:
        stdout.print(renderable)
    return 0
