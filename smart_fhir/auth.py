"""
Credential descriptors attached to a client configuration.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal, TypeAlias


@dataclass(frozen=True, slots=True)
class NoCredential:
    type: Literal["none"] = "none"


@dataclass(frozen=True, slots=True)
class BasicCredential:
    username: str
    password: str
    type: Literal["basic"] = "basic"

    def __repr__(self) -> str:
        return f"BasicCredential(username={self.username!r}, password='***')"


@dataclass(frozen=True, slots=True)
class BearerCredential:
    token: str
    type: Literal["bearer"] = "bearer"

    def __repr__(self) -> str:
        return "BearerCredential(token='***')"


Credential: TypeAlias = NoCredential | BasicCredential | BearerCredential


def credential_from_mapping(value: Mapping[str, Any] | Credential | None) -> Credential:
    """
    Build a credential from `{"type": "none" | "basic" | "bearer", ...}`.

    Existing credential objects pass through unchanged; None means no credential.
    """
    if value is None:
        return NoCredential()
    if isinstance(value, (NoCredential, BasicCredential, BearerCredential)):
        return value
    kind = value.get("type", "none")
    if kind == "none":
        return NoCredential()
    if kind == "basic":
        return BasicCredential(username=str(value["username"]), password=str(value["password"]))
    if kind == "bearer":
        return BearerCredential(token=str(value["token"]))
    raise ValueError(f"Unknown credential type: {kind!r}")
