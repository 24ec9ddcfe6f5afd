"""
Payloads exchanged during a SMART on FHIR launch.

Unknown keys are kept (`extra="allow"`) so vendor-specific token and launch
context fields survive persistence.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict


class SmartModel(BaseModel):
    model_config = ConfigDict(
        extra="allow",
        populate_by_name=True,
        validate_assignment=True,
    )

    def dump(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ClientRegistration(SmartModel):
    """OAuth2 client registration used for the launch."""

    client_id: str
    scope: str | None = None
    redirect_uri: str | None = None
    secret: str | None = None
    launch: str | None = None
    state: str | None = None


class OAuth2Endpoints(SmartModel):
    registration_uri: str | None = None
    authorize_uri: str | None = None
    token_uri: str | None = None


class Provider(SmartModel):
    """
    Authorization provider for a FHIR server.

    `oauth2` is None for servers used without OAuth2 (bypass mode).
    """

    name: str | None = None
    description: str | None = None
    url: str | None = None
    oauth2: OAuth2Endpoints | None = None


class LaunchParams(SmartModel):
    """Everything persisted under the launch `state` key."""

    client: ClientRegistration
    response_type: str = "code"
    server: str | None = None
    provider: Provider | None = None
    fake_token_response: dict[str, Any] | None = None


class TokenResponse(SmartModel):
    access_token: str | None = None
    token_type: str | None = None
    expires_in: int | None = None
    refresh_token: str | None = None
    scope: str | None = None
    patient: str | None = None
    encounter: str | None = None
    id_token: str | None = None
    state: str | None = None
    exp: int | None = None
    need_patient_banner: bool | None = None
