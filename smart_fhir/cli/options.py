from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

from .click_compat import click
from .context import CLIContext

F = TypeVar("F", bound=Callable[..., Any])


def _override_output(ctx: click.Context, param: click.Parameter, value: Any) -> Any:
    """Apply a per-command output choice to the shared context."""
    if not value or not isinstance(ctx.obj, CLIContext):
        return value
    ctx.obj.output = "json" if param.name == "json" else value
    return value


def output_options(fn: F) -> F:
    """`--output`/`--json` on a subcommand, so `smart-fhir read ... --json` works."""
    fn = click.option(
        "--json",
        is_flag=True,
        expose_value=False,
        callback=_override_output,
        help="Same as --output json.",
    )(fn)
    return click.option(
        "--output",
        type=click.Choice(["table", "json"]),
        default=None,
        expose_value=False,
        callback=_override_output,
        help="Result format for this command.",
    )(fn)
