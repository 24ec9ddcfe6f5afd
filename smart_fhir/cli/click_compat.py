"""click, upgraded to rich-click's command classes when that package is installed."""

from __future__ import annotations

from typing import Any, cast

import click

rich_click: Any
try:
    import rich_click as _rich_click  # pyright: ignore[reportMissingImports]
except ModuleNotFoundError:  # pragma: no cover
    rich_click = None
else:
    rich_click = _rich_click

RICH_HELP = rich_click is not None

if RICH_HELP:  # pragma: no cover
    RichGroup = cast(type[click.Group], rich_click.RichGroup)
    RichCommand = cast(type[click.Command], rich_click.RichCommand)
else:
    RichGroup = click.Group
    RichCommand = click.Command

HELP_SETTINGS: dict[str, Any] = {"help_option_names": ["-h", "--help"]}

__all__ = ["HELP_SETTINGS", "RICH_HELP", "RichCommand", "RichGroup", "click"]
