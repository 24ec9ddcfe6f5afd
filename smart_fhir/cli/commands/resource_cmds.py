from __future__ import annotations

import asyncio
import json
from typing import Any

from ..click_compat import RichCommand, click
from ..context import CLIContext
from ..errors import usage_error
from ..options import output_options
from ..runner import CommandOutput, run_command


def _next_link(bundle: Any) -> str | None:
    if not isinstance(bundle, dict):
        return None
    for link in bundle.get("link") or []:
        if isinstance(link, dict) and link.get("relation") == "next":
            return link.get("url")
    return None


def _parse_query(raw: str | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        query = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise usage_error(
            f"--query is not valid JSON: {exc.msg}",
            hint='Example: --query \'{"birthdate": {"$gt": "1970-01-01"}}\'',
        ) from exc
    if not isinstance(query, dict):
        raise usage_error("--query must be a JSON object.")
    return query


@click.command(name="metadata", cls=RichCommand)
@output_options
@click.pass_obj
def metadata_cmd(ctx: CLIContext) -> None:
    """Fetch the server's capability statement."""

    def fn(ctx: CLIContext, warnings: list[str]) -> CommandOutput:
        async def call() -> Any:
            async with ctx.open_client(warnings=warnings) as fhir:
                return (await fhir.conformance()).data

        statement = asyncio.run(call())
        data = statement
        if ctx.output != "json" and isinstance(statement, dict):
            data = {
                "resourceType": statement.get("resourceType"),
                "fhirVersion": statement.get("fhirVersion"),
                "software": (statement.get("software") or {}).get("name"),
                "status": statement.get("status"),
                "formats": statement.get("format"),
            }
        return CommandOutput(data=data, warnings=warnings, api_called=True)

    run_command(ctx, command="metadata", fn=fn)


@click.command(name="read", cls=RichCommand)
@click.argument("resource_type")
@click.argument("resource_id")
@output_options
@click.pass_obj
def read_cmd(ctx: CLIContext, resource_type: str, resource_id: str) -> None:
    """Read one resource by type and id."""

    def fn(ctx: CLIContext, warnings: list[str]) -> CommandOutput:
        async def call() -> Any:
            async with ctx.open_client(warnings=warnings) as fhir:
                return (await fhir.read(type=resource_type, id=resource_id)).data

        return CommandOutput(data=asyncio.run(call()), warnings=warnings, api_called=True)

    run_command(ctx, command="read", fn=fn)


@click.command(name="search", cls=RichCommand)
@click.argument("resource_type")
@click.option("--query", "query_json", type=str, default=None, help="Search query as JSON.")
@click.option("--count", type=int, default=None, help="Page size (_count).")
@click.option("--all", "fetch_all", is_flag=True, help="Follow next links and list every match.")
@output_options
@click.pass_obj
def search_cmd(
    ctx: CLIContext,
    resource_type: str,
    *,
    query_json: str | None,
    count: int | None,
    fetch_all: bool,
) -> None:
    """Search resources of one type.

    The query uses the structured form, e.g. `{"name": "Smith", "$sort": ["birthdate"]}`.
    """

    def fn(ctx: CLIContext, warnings: list[str]) -> CommandOutput:
        query = _parse_query(query_json)
        if count is not None and count < 1:
            raise usage_error("--count must be >= 1.")
        params: dict[str, Any] = {"type": resource_type}
        if query:
            params["query"] = query
        if count is not None:
            params["count"] = count

        async def call() -> Any:
            async with ctx.open_client(warnings=warnings) as fhir:
                if fetch_all:
                    return await fhir.fetch_all(**params)
                return (await fhir.search(**params)).data

        data = asyncio.run(call())
        if fetch_all:
            return CommandOutput(
                data=data,
                warnings=warnings,
                pagination={"total": len(data), "hasNext": False},
                api_called=True,
            )
        next_url = _next_link(data)
        return CommandOutput(
            data=data,
            warnings=warnings,
            pagination={"hasNext": next_url is not None, "nextUrl": next_url},
            api_called=True,
        )

    run_command(ctx, command="search", fn=fn)
