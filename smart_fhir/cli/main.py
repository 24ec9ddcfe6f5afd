"""
`smart-fhir` entry point.

Global options configure the shared `CLIContext`; each subcommand builds its own
client or launcher from it, so invoking the group alone never touches the network.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import smart_fhir

from .click_compat import HELP_SETTINGS, RichGroup, click
from .context import CLIContext
from .logging import configure_logging, restore_logging
from .paths import get_paths

F = TypeVar("F", bound=Callable[..., Any])

_GLOBAL_OPTIONS = (
    click.option(
        "--output",
        type=click.Choice(["table", "json"]),
        default="table",
        help="Result format.",
    ),
    click.option("--json", "json_flag", is_flag=True, help="Same as --output json."),
    click.option("-q", "--quiet", is_flag=True, help="Only print results and errors."),
    click.option("-v", "verbose", count=True, help="More logging on stderr (-v, -vv)."),
    click.option(
        "--dotenv/--no-dotenv",
        default=False,
        help="Read SMART_FHIR_* settings from a .env file.",
    ),
    click.option(
        "--env-file",
        type=click.Path(dir_okay=False),
        default=None,
        help="Settings file for --dotenv (default: see `config path`).",
    ),
    click.option("--base-url", default=None, help="FHIR service root URL."),
    click.option(
        "--token-file",
        default=None,
        help="Bearer token file, or '-' to read it from stdin.",
    ),
    click.option("--timeout", type=float, default=None, help="HTTP timeout in seconds."),
    click.option(
        "--log-file",
        type=click.Path(dir_okay=False),
        default=None,
        help="Write the debug log here instead of the platform log directory.",
    ),
    click.option("--no-log-file", is_flag=True, help="Do not write a log file."),
)


def global_options(fn: F) -> F:
    for option in reversed(_GLOBAL_OPTIONS):
        fn = option(fn)
    return fn


@click.group(
    name="smart-fhir",
    cls=RichGroup,
    invoke_without_command=True,
    context_settings=HELP_SETTINGS,
)
@global_options
@click.version_option(version=smart_fhir.__version__, prog_name="smart-fhir")
@click.pass_context
def cli(click_ctx: click.Context, **options: Any) -> None:
    """FHIR REST and SMART on FHIR launch from the command line."""
    if click_ctx.invoked_subcommand is None:
        click.echo(click_ctx.get_help())
        raise click.exceptions.Exit(0)

    paths = get_paths()
    log_file = Path(options["log_file"]) if options["log_file"] else paths.log_file
    write_log = not options["no_log_file"]
    env_file = options["env_file"]

    click_ctx.obj = CLIContext(
        output="json" if options["json_flag"] else options["output"],
        quiet=options["quiet"],
        verbosity=options["verbose"],
        dotenv=options["dotenv"],
        env_file=Path(env_file) if env_file else None,
        base_url=options["base_url"],
        token_file=options["token_file"],
        timeout=options["timeout"],
        log_file=log_file,
        enable_log_file=write_log,
        _paths=paths,
    )
    state = configure_logging(
        verbosity=options["verbose"], log_file=log_file, enable_file=write_log
    )
    click_ctx.call_on_close(lambda: restore_logging(state))


def _register() -> None:
    from .commands.config_cmds import config_group
    from .commands.launch_cmds import launch_group
    from .commands.resource_cmds import metadata_cmd, read_cmd, search_cmd
    from .commands.version_cmd import version_cmd

    for command in (version_cmd, config_group, metadata_cmd, read_cmd, search_cmd, launch_group):
        cli.add_command(command)


_register()
