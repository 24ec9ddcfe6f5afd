"""
Command execution: run a command body, wrap what it returns (or raises) in a
`CommandResult` envelope, render it and exit with the matching status.
"""

from __future__ import annotations

import sys
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from rich.console import Console

from .click_compat import click
from .context import (
    CLIContext,
    build_result,
    env_base_url,
    error_info_for_exception,
    exit_code_for_exception,
)
from .render import RenderSettings, render_result
from .results import CommandResult


@dataclass(frozen=True, slots=True)
class CommandOutput:
    """What a command body hands back on success."""

    data: Any | None = None
    warnings: list[str] = field(default_factory=list)
    pagination: dict[str, Any] | None = None
    api_called: bool = False
    exit_code: int = 0


CommandBody = Callable[[CLIContext, list[str]], CommandOutput]


def emit_result(ctx: CLIContext, result: CommandResult) -> None:
    render_result(
        result,
        settings=RenderSettings(output=ctx.output, quiet=ctx.quiet, verbosity=ctx.verbosity),
    )
    # JSON output already carries the warnings inside the envelope.
    if ctx.output == "json" or ctx.quiet or not result.warnings:
        return
    console = Console(file=sys.stderr, force_terminal=False)
    for warning in result.warnings:
        console.print(f"Warning: {warning}")


def _execute(ctx: CLIContext, command: str, body: CommandBody) -> tuple[CommandResult, int]:
    started = time.time()
    warnings: list[str] = []
    base_url = ctx.base_url or env_base_url()
    try:
        out = body(ctx, warnings)
    except Exception as exc:
        failed = build_result(
            ok=False,
            command=command,
            started_at=started,
            data=None,
            warnings=warnings,
            base_url=base_url,
            error=error_info_for_exception(exc),
        )
        return failed, exit_code_for_exception(exc)
    succeeded = build_result(
        ok=True,
        command=command,
        started_at=started,
        data=out.data,
        warnings=out.warnings or warnings,
        base_url=base_url if out.api_called else None,
        pagination=out.pagination,
    )
    return succeeded, out.exit_code


def run_command(ctx: CLIContext, *, command: str, fn: CommandBody) -> None:
    """Run `fn`, emit its result envelope and exit with the matching code."""
    result, code = _execute(ctx, command, fn)
    emit_result(ctx, result)
    raise click.exceptions.Exit(code)
