from __future__ import annotations

import os
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from smart_fhir import FhirClient, FhirConfig
from smart_fhir.auth import BearerCredential
from smart_fhir.config import ENV_PREFIX
from smart_fhir.config import _maybe_load_dotenv as _sdk_maybe_load_dotenv
from smart_fhir.exceptions import AuthorizationFlowError, FhirError, TransportError
from smart_fhir.smart import JsonFileStorage, PerStateSessionStore, SmartLauncher

from .errors import CLIError, OptionalDependencyError, usage_error
from .paths import CliPaths, get_paths
from .results import CommandMeta, CommandResult, ErrorInfo

OutputFormat = Literal["table", "json"]

_DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass
class CLIContext:
    output: OutputFormat
    quiet: bool
    verbosity: int
    dotenv: bool
    env_file: Path | None
    base_url: str | None
    token_file: str | None
    timeout: float | None
    log_file: Path | None
    enable_log_file: bool

    _paths: CliPaths = field(default_factory=get_paths)
    _dotenv_loaded: bool = False

    @property
    def paths(self) -> CliPaths:
        return self._paths

    @property
    def effective_timeout(self) -> float:
        return self.timeout if self.timeout is not None else _DEFAULT_TIMEOUT_SECONDS

    def load_dotenv_if_requested(self) -> None:
        if self._dotenv_loaded:
            return
        try:
            _sdk_maybe_load_dotenv(
                load_dotenv=self.dotenv,
                dotenv_path=self.env_file or self.paths.config_path,
                override=False,
            )
        except ImportError as exc:
            raise OptionalDependencyError(
                "Optional .env support requires python-dotenv; install `smart-fhir-sdk[cli]`.",
            ) from exc
        self._dotenv_loaded = True

    def _read_token_file(self) -> str:
        assert self.token_file is not None
        if self.token_file == "-":
            token = sys.stdin.read().strip()
            if not token:
                raise usage_error("Empty token provided via stdin.")
            return token
        path = Path(self.token_file)
        try:
            token = path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise usage_error(f"Cannot read token file {path}: {exc}") from exc
        if not token:
            raise usage_error(f"Empty token file: {path}")
        return token

    def resolve_config(self, *, warnings: list[str]) -> FhirConfig:
        self.load_dotenv_if_requested()
        overrides: dict[str, Any] = {}
        if self.base_url:
            overrides["base_url"] = self.base_url
        if self.token_file is not None:
            overrides["auth"] = BearerCredential(token=self._read_token_file())
        if self.verbosity >= 2:
            overrides["debug"] = True
        try:
            config = FhirConfig.from_env(**overrides)
        except ValueError as exc:
            raise usage_error(
                str(exc), hint=f"Pass --base-url or set {ENV_PREFIX}BASE_URL."
            ) from exc
        if not config.base_url.startswith("https://"):
            warnings.append(f"Base URL {config.base_url} is not HTTPS.")
        return config

    def open_client(self, *, warnings: list[str]) -> FhirClient:
        """
        Build a client for one command.

        The client must be used (and closed) inside the event loop the command runs.
        """
        config = self.resolve_config(warnings=warnings)
        return FhirClient(
            config.base_url,
            auth=config.auth,
            patient=config.patient,
            debug=config.debug,
            timeout=self.effective_timeout,
        )

    def open_launcher(self, *, location: str = "") -> SmartLauncher:
        """Launcher whose sessions persist in the CLI state directory."""
        self.load_dotenv_if_requested()
        store = PerStateSessionStore(JsonFileStorage(self.paths.session_path))
        return SmartLauncher(store=store, location=location)


def exit_code_for_exception(exc: Exception) -> int:
    if isinstance(exc, CLIError):
        return exc.exit_code
    if isinstance(exc, AuthorizationFlowError):
        return 3
    if isinstance(exc, TransportError):
        return 4 if exc.status == 404 else 5
    if isinstance(exc, FhirError):
        return 1
    return 1


def _error_type(exc: Exception) -> str:
    if isinstance(exc, AuthorizationFlowError):
        return "auth_error"
    if isinstance(exc, TransportError):
        if exc.status == 404:
            return "not_found"
        if exc.status is None:
            return "network_error"
        if exc.status in (401, 403):
            return "auth_error"
        return "server_error" if exc.status >= 500 else "api_error"
    return exc.__class__.__name__


def error_info_for_exception(exc: Exception) -> ErrorInfo:
    if isinstance(exc, CLIError):
        return ErrorInfo(
            type=exc.error_type, message=exc.message, hint=exc.hint, details=exc.details
        )
    if isinstance(exc, TransportError):
        details: dict[str, Any] = {"status": exc.status}
        if isinstance(exc.data, dict):
            details["response"] = exc.data
        return ErrorInfo(type=_error_type(exc), message=str(exc), details=details)
    return ErrorInfo(type=_error_type(exc), message=str(exc), details=None)


def build_result(
    *,
    ok: bool,
    command: str,
    started_at: float,
    data: Any | None,
    warnings: list[str],
    base_url: str | None = None,
    pagination: dict[str, Any] | None = None,
    error: ErrorInfo | None = None,
) -> CommandResult:
    duration_ms = int(max(0.0, (time.time() - started_at) * 1000))
    meta = CommandMeta(duration_ms=duration_ms, base_url=base_url, pagination=pagination)
    return CommandResult(
        ok=ok,
        command=command,
        data=data,
        warnings=warnings,
        meta=meta,
        error=error,
    )


def env_base_url() -> str | None:
    return os.getenv(f"{ENV_PREFIX}BASE_URL") or None
