"""
SMART on FHIR launch: authorization, token lifecycle and the resulting client.
"""

from __future__ import annotations

from .client import PatientContext, ServerInfo, SmartClient, UserContext
from .launch import SmartLauncher
from .models import ClientRegistration, LaunchParams, OAuth2Endpoints, Provider, TokenResponse
from .storage import (
    TOKEN_RESPONSE_KEY,
    FlatSessionStore,
    JsonFileStorage,
    PerStateSessionStore,
    SessionStore,
)

__all__ = [
    "ClientRegistration",
    "FlatSessionStore",
    "JsonFileStorage",
    "LaunchParams",
    "OAuth2Endpoints",
    "PatientContext",
    "PerStateSessionStore",
    "Provider",
    "ServerInfo",
    "SessionStore",
    "SmartClient",
    "SmartLauncher",
    "TOKEN_RESPONSE_KEY",
    "TokenResponse",
    "UserContext",
]
