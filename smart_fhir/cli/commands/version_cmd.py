from __future__ import annotations

import platform

import httpx

import smart_fhir

from ..click_compat import RICH_HELP, RichCommand, click
from ..context import CLIContext
from ..options import output_options
from ..runner import CommandOutput, run_command


@click.command(name="version", cls=RichCommand)
@output_options
@click.pass_obj
def version_cmd(ctx: CLIContext) -> None:
    """Show package, Python and transport versions."""

    def fn(_: CLIContext, _warnings: list[str]) -> CommandOutput:
        data = {
            "version": smart_fhir.__version__,
            "pythonVersion": platform.python_version(),
            "platform": platform.platform(),
            "httpxVersion": httpx.__version__,
            "richHelp": RICH_HELP,
        }
        return CommandOutput(data=data, api_called=False)

    run_command(ctx, command="version", fn=fn)
