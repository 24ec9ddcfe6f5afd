"""
Client handed back by a completed SMART launch.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from ..auth import BasicCredential, BearerCredential, Credential, NoCredential
from ..client import FhirClient
from ..clients.adapter import Adapter
from ..clients.pipeline import FhirResponse
from ..exceptions import FhirError
from ..middleware import _basic_header
from ..pagination import ReferencedResults
from .models import TokenResponse

_SERVICE_URL = re.compile(r"^https?://.+[^/]$")


@dataclass(frozen=True, slots=True)
class ServerInfo:
    service_url: str
    auth: Credential


class PatientContext:
    """The launch patient, with a client scoped to it."""

    def __init__(self, patient_id: str, api: FhirClient):
        self.id = patient_id
        self.api = api

    async def read(self) -> FhirResponse:
        return await self.api.read(type="Patient", id=self.id)


class UserContext:
    """The signed-in user, identified by a `ResourceType/id` reference or URL."""

    def __init__(self, user_id: str | None, api: FhirClient):
        self.id = user_id
        self._api = api

    async def read(self) -> FhirResponse:
        if not self.id:
            raise FhirError("No user id for this launch; request the openid and profile scopes")
        parts = self.id.rstrip("/").split("/")
        if len(parts) < 2:
            raise FhirError(f"User id {self.id!r} is not a ResourceType/id reference")
        return await self._api.read(type=parts[-2], id=parts[-1])


class SmartClient:
    """
    FHIR access for one completed launch.

    Attributes:
        server: Service URL and credential in use
        api: Client for the whole server
        patient: Patient context (None when the launch had no patient)
        user: Signed-in user context
        user_id: `profile`/`fhirUser` claim of the id token, when present
        state: Copy of the persisted launch record
        token_response: The token response the client was built from
    """

    def __init__(
        self,
        service_url: str,
        *,
        auth: Credential | None = None,
        patient_id: str | None = None,
        user_id: str | None = None,
        adapter: Adapter | None = None,
        state: Mapping[str, Any] | None = None,
        token_response: Mapping[str, Any] | None = None,
    ):
        if not service_url or not _SERVICE_URL.match(service_url):
            raise ValueError(
                "Service URL must begin with http(s):// and must not end with a slash, "
                f"got {service_url!r}"
            )
        self.server = ServerInfo(service_url=service_url, auth=auth or NoCredential())
        self.api = FhirClient(service_url, auth=self.server.auth, adapter=adapter)
        self.patient = (
            PatientContext(patient_id, self.api.scoped(patient=patient_id)) if patient_id else None
        )
        self.user_id = user_id
        self.user = UserContext(user_id, self.api)
        self.state: dict[str, Any] = dict(state or {})
        self.token_response = TokenResponse.model_validate(dict(token_response or {}))

    async def __aenter__(self) -> SmartClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.api.aclose()

    @property
    def _scoped_api(self) -> FhirClient:
        return self.patient.api if self.patient is not None else self.api

    def authenticated(self, headers: Mapping[str, str] | None = None) -> dict[str, str]:
        """Return `headers` plus the Authorization header for ad-hoc requests."""
        result = dict(headers or {})
        auth = self.server.auth
        if isinstance(auth, BearerCredential):
            result["Authorization"] = f"Bearer {auth.token}"
        elif isinstance(auth, BasicCredential):
            result["Authorization"] = _basic_header({"auth": auth}) or ""
        return result

    async def fetch_all(self, **params: Any) -> list[dict[str, Any]]:
        """`FhirClient.fetch_all`, patient-scoped when the launch has a patient."""
        return await self._scoped_api.fetch_all(**params)

    async def fetch_all_with_references(
        self,
        resolve_params: Sequence[str] | None = None,
        **params: Any,
    ) -> ReferencedResults:
        return await self._scoped_api.fetch_all_with_references(resolve_params, **params)
