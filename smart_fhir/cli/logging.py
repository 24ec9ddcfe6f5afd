"""
Logging setup for CLI invocations.

The library only emits records; the CLI decides where they go: stderr through
rich (WARNING, INFO at `-v`, DEBUG at `-vv`) and, unless disabled, a rotating
file under the platform log directory.
"""

from __future__ import annotations

import logging
import logging.handlers
from dataclasses import dataclass
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

_FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True, slots=True)
class LoggingState:
    level: int
    handlers: tuple[logging.Handler, ...]


def _stderr_level(verbosity: int) -> int:
    if verbosity >= 2:
        return logging.DEBUG
    if verbosity == 1:
        return logging.INFO
    return logging.WARNING


def configure_logging(
    *,
    verbosity: int,
    log_file: Path | None,
    enable_file: bool,
) -> LoggingState:
    """Install CLI handlers on the root logger and return what was there before."""
    root = logging.getLogger()
    previous = LoggingState(level=root.level, handlers=tuple(root.handlers))

    stderr_handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=verbosity >= 2,
    )
    stderr_handler.setLevel(_stderr_level(verbosity))
    handlers: list[logging.Handler] = [stderr_handler]

    if enable_file and log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file, maxBytes=1_000_000, backupCount=3, encoding="utf-8"
            )
        except OSError as exc:
            logging.getLogger(__name__).warning("file logging disabled: %s", exc)
        else:
            file_handler.setLevel(logging.DEBUG if verbosity >= 2 else logging.INFO)
            file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
            handlers.append(file_handler)

    root.handlers = handlers
    root.setLevel(min(handler.level for handler in handlers))
    # httpx logs every request at INFO; only show it at -vv.
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbosity >= 2 else logging.WARNING)
    return previous


def restore_logging(state: LoggingState) -> None:
    root = logging.getLogger()
    for handler in root.handlers:
        if handler not in state.handlers:
            handler.close()
    root.handlers = list(state.handlers)
    root.setLevel(state.level)
