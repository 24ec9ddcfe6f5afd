"""
Client configuration.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from .auth import BasicCredential, BearerCredential, Credential, NoCredential

CredentialsMode = Literal["same-origin", "include"]

ENV_PREFIX = "SMART_FHIR_"


def _maybe_load_dotenv(
    *,
    load_dotenv: bool,
    dotenv_path: str | Path | None = None,
    override: bool = False,
) -> bool:
    """
    Load a `.env` file when explicitly requested.

    Raises ImportError when python-dotenv is not installed.
    """
    if not load_dotenv:
        return False
    try:
        from dotenv import load_dotenv as _load_dotenv
    except ImportError as exc:
        raise ImportError(
            "Optional .env support requires python-dotenv; install `smart-fhir-sdk[cli]`."
        ) from exc
    return bool(_load_dotenv(dotenv_path=dotenv_path, override=override))


def _env_flag(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True, slots=True)
class FhirConfig:
    """
    Settings copied onto every request built by a `FhirClient`.

    Attributes:
        base_url: FHIR service root, e.g. `https://fhir.example/r4`
        auth: Credential descriptor (none, basic or bearer)
        patient: Patient id that scopes searches on patient-bearing resources
        cache: Absolute resource URL -> resource, consulted by `resolve`
        debug: Log every request at INFO
        credentials: Credentials mode (`same-origin` or `include`)
        headers: Extra headers sent with every request
    """

    base_url: str
    auth: Credential = field(default_factory=NoCredential)
    patient: str | None = None
    cache: Mapping[str, Any] | None = None
    debug: bool = False
    credentials: CredentialsMode | None = None
    headers: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(
        cls,
        *,
        load_dotenv: bool = False,
        dotenv_path: str | Path | None = None,
        **overrides: Any,
    ) -> FhirConfig:
        """
        Build a configuration from `SMART_FHIR_*` environment variables.

        Keyword overrides win over the environment.
        """
        _maybe_load_dotenv(load_dotenv=load_dotenv, dotenv_path=dotenv_path)

        base_url = overrides.pop("base_url", None) or os.getenv(f"{ENV_PREFIX}BASE_URL", "")
        if not base_url.strip():
            raise ValueError(f"Missing FHIR base URL; set {ENV_PREFIX}BASE_URL.")

        auth: Credential = NoCredential()
        token = os.getenv(f"{ENV_PREFIX}TOKEN", "").strip()
        username = os.getenv(f"{ENV_PREFIX}USERNAME", "").strip()
        if token:
            auth = BearerCredential(token=token)
        elif username:
            auth = BasicCredential(
                username=username,
                password=os.getenv(f"{ENV_PREFIX}PASSWORD", ""),
            )

        values: dict[str, Any] = {
            "base_url": base_url.strip(),
            "auth": auth,
            "patient": os.getenv(f"{ENV_PREFIX}PATIENT") or None,
            "debug": _env_flag(os.getenv(f"{ENV_PREFIX}DEBUG")),
        }
        values.update(overrides)
        return cls(**values)
