from __future__ import annotations

from ..click_compat import RichCommand, RichGroup, click
from ..context import CLIContext
from ..options import output_options
from ..runner import CommandOutput, run_command


@click.group(name="config", cls=RichGroup)
def config_group() -> None:
    """Configuration and local state."""


@config_group.command(name="path", cls=RichCommand)
@output_options
@click.pass_obj
def config_path(ctx: CLIContext) -> None:
    """Show where settings, launch sessions and logs are kept."""

    def fn(_: CLIContext, _warnings: list[str]) -> CommandOutput:
        path = ctx.env_file or ctx.paths.config_path
        return CommandOutput(
            data={
                "path": str(path),
                "exists": path.exists(),
                "sessionPath": str(ctx.paths.session_path),
                "logFile": str(ctx.log_file) if ctx.enable_log_file and ctx.log_file else None,
            },
            api_called=False,
        )

    run_command(ctx, command="config path", fn=fn)
