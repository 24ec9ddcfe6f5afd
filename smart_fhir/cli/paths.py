from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from platformdirs import PlatformDirs

APP_NAME = "smart-fhir"


@dataclass(frozen=True, slots=True)
class CliPaths:
    config_dir: Path
    state_dir: Path
    log_dir: Path

    @property
    def config_path(self) -> Path:
        """`.env`-style settings file read by `--dotenv` when no `--env-file` is given."""
        return self.config_dir / "config.env"

    @property
    def session_path(self) -> Path:
        """Launch records and token responses for the `launch` commands."""
        return self.state_dir / "sessions.json"

    @property
    def log_file(self) -> Path:
        return self.log_dir / "smart-fhir.log"


def get_paths() -> CliPaths:
    dirs = PlatformDirs(APP_NAME, appauthor=False)
    return CliPaths(
        config_dir=Path(dirs.user_config_dir),
        state_dir=Path(dirs.user_state_dir),
        log_dir=Path(dirs.user_log_dir),
    )
