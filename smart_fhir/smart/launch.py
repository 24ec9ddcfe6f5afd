"""
SMART on FHIR launch sequence.

`SmartLauncher.authorize()` starts a launch: it discovers the authorization
server, persists the launch record under a fresh `state` and redirects to the
authorization endpoint. `SmartLauncher.ready()` runs on the redirect back (and
on every later page load): it exchanges the code, refreshes or replays a stored
token, and hands back a `SmartClient`.

Example:
    launcher = SmartLauncher(store=FlatSessionStore(session), location=request_url)
    target = await launcher.authorize(
        {"client_id": "my-app", "scope": "launch/patient patient/*.read"}
    )
    ...
    client = await launcher.ready(url=callback_url)
    bundle = await client.patient.api.search(type="Observation")
"""

from __future__ import annotations

import base64
import logging
import time
import uuid
from collections.abc import Callable, Mapping
from typing import Any
from urllib.parse import parse_qsl, quote, urlsplit, urlunsplit

import jwt

from ..auth import BearerCredential, Credential, NoCredential
from ..clients.adapter import Adapter, maybe_await
from ..exceptions import AuthorizationFlowError, TransportError
from .client import SmartClient
from .models import ClientRegistration, LaunchParams, OAuth2Endpoints, Provider
from .storage import FlatSessionStore, SessionStore

logger = logging.getLogger(__name__)

OAUTH_URIS_EXTENSION = "http://fhir-registry.smarthealthit.org/StructureDefinition/oauth-uris"
SMART_SECURITY_CODE = "smart-on-fhir"
# Refresh this many seconds before the access token expires.
REFRESH_MARGIN = 120

NO_STATE = "No 'state' parameter found in authorization response."
NO_ACCESS_TOKEN = "Failed to obtain access token."
REFRESH_FAILED = (
    "Failed to exchange refresh token for access token. "
    "Please close and re-launch the application again."
)
CONFORMANCE_UNAVAILABLE = "Unable to fetch conformance statement"

_URI_SAFE = "-_.!~*'()"


def _encode(value: Any) -> str:
    return quote(str(value), safe=_URI_SAFE)


def _query_params(url: str | None) -> dict[str, str]:
    if not url:
        return {}
    return dict(parse_qsl(urlsplit(url).query, keep_blank_values=True))


def _fragment_params(value: str | None) -> dict[str, str]:
    if not value:
        return {}
    _, sep, fragment = value.partition("#")
    if not sep:
        return {}
    return dict(parse_qsl(fragment, keep_blank_values=True))


def _relative(location: str, path: str) -> str:
    """Resolve `path` against the directory of `location`."""
    if not location:
        raise AuthorizationFlowError(
            "Cannot derive redirect_uri: no page location known; pass client.redirect_uri"
        )
    parts = urlsplit(location)
    directory = parts.path.rsplit("/", 1)[0] + "/"
    return urlunsplit((parts.scheme, parts.netloc, directory, "", "")) + path.lstrip("/")


def _basic_client_auth(client: ClientRegistration) -> str:
    raw = f"{client.client_id}:{client.secret}".encode()
    return "Basic " + base64.b64encode(raw).decode("ascii")


def _claims(token: str | None) -> dict[str, Any]:
    """Decode a JWT payload without verifying it; opaque tokens give `{}`."""
    if not token:
        return {}
    try:
        return jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return {}


def _as_flow_error(exc: Exception) -> AuthorizationFlowError:
    if isinstance(exc, AuthorizationFlowError):
        return exc
    return AuthorizationFlowError(str(exc) or type(exc).__name__, detail=exc)


class SmartLauncher:
    """
    Drives the SMART launch for one application.

    Args:
        adapter: Transport + deferred collaborators; a default httpx adapter is
            created (and closed by `aclose()`) when omitted
        store: Session store layout; defaults to `FlatSessionStore` over a dict
        location: URL of the current page (launch URL or redirect callback)
        redirect: Called with the authorization URL instead of a browser redirect
        clock: Seconds since the epoch, used for token expiry checks
    """

    def __init__(
        self,
        adapter: Adapter | None = None,
        store: SessionStore | None = None,
        *,
        location: str = "",
        redirect: Callable[[str], Any] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._owns_adapter = adapter is None
        self._adapter = adapter or Adapter()
        self._store = store or FlatSessionStore()
        self._location = location
        self._redirect = redirect
        self._clock = clock

    async def __aenter__(self) -> SmartLauncher:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_adapter:
            await self._adapter.aclose()

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def adapter(self) -> Adapter:
        return self._adapter

    # =========================================================================
    # Authorization
    # =========================================================================

    async def authorize(
        self,
        params: Mapping[str, Any],
        errback: Callable[[AuthorizationFlowError], Any] | None = None,
        *,
        url: str | None = None,
    ) -> str | None:
        """
        Start a launch and return the URL the user agent must be sent to.

        `params` is either a client registration (`client_id`, `scope`,
        `redirect_uri`, `secret`) or a launch record with a `client` key plus
        `server`, `provider` and `response_type`. An `iss` or `fhirServiceUrl`
        in the launch URL overrides `server`: the EHR names the server it
        launched against. For servers without OAuth2 (bypass mode) the target
        is the redirect URI itself.
        """
        location = url or self._location
        try:
            target = await self._authorize(params, location)
        except Exception as exc:
            error = _as_flow_error(exc)
            logger.warning("SMART authorize failed: %s", error)
            if errback is None:
                if error is exc:
                    raise
                raise error from exc
            await maybe_await(errback(error))
            return None
        if self._redirect is not None:
            await maybe_await(self._redirect(target))
        return target

    async def _authorize(self, params: Mapping[str, Any], location: str) -> str:
        self._store.clear_token()
        launch = self._normalize(params, location)

        provider = await self.discover_provider(
            launch.server, launch.provider, location=location
        )
        launch.provider = provider
        state = launch.client.state or str(uuid.uuid4())
        client = launch.client

        if provider.oauth2 is None:
            # No authorization server: the launch completes on the redirect URI.
            fake = dict(launch.fake_token_response or {})
            launch.fake_token_response = fake
            self._store.save_session(state, launch.dump())
            self._store.save_token({"state": state})
            logger.debug("bypass launch for %s", provider.url)
            separator = "&" if "?" in client.redirect_uri else "?"
            return f"{client.redirect_uri}{separator}state={_encode(state)}"

        self._store.save_session(state, launch.dump())
        authorize_uri = provider.oauth2.authorize_uri
        query = [
            ("client_id", client.client_id),
            ("response_type", launch.response_type),
            ("scope", client.scope or ""),
            ("redirect_uri", client.redirect_uri),
            ("state", state),
            ("aud", launch.server or provider.url or ""),
        ]
        if client.launch:
            query.append(("launch", client.launch))
        separator = "&" if "?" in str(authorize_uri) else "?"
        return (
            f"{authorize_uri}{separator}"
            + "&".join(f"{name}={_encode(value)}" for name, value in query)
        )

    def _normalize(self, params: Mapping[str, Any], location: str) -> LaunchParams:
        raw = dict(params)
        if "client" not in raw:
            raw = {"client": raw}
        launch = LaunchParams.model_validate(raw)
        client = launch.client
        url_params = _query_params(location)

        if not client.redirect_uri:
            client.redirect_uri = _relative(location, "")
        elif "://" not in client.redirect_uri:
            client.redirect_uri = _relative(location, client.redirect_uri)

        launch_id = url_params.get("launch")
        if launch_id:
            scope = client.scope or ""
            if "launch" not in scope.split():
                client.scope = f"{scope} launch".strip()
            client.launch = launch_id

        server = url_params.get("iss") or url_params.get("fhirServiceUrl")
        if server:
            launch.server = server

        patient_id = url_params.get("patientId")
        if patient_id:
            fake = dict(launch.fake_token_response or {})
            fake["patient"] = patient_id
            launch.fake_token_response = fake
        return launch

    async def discover_provider(
        self,
        server: str | None,
        provider: Provider | Mapping[str, Any] | None = None,
        *,
        location: str | None = None,
    ) -> Provider:
        """
        Find the authorization endpoints for `server`.

        A `fhirServiceUrl` launch without `iss` is bypass mode (no OAuth2). An
        explicit `provider` is used as given. Otherwise the endpoints come from
        the SMART OAuth URIs extension of the server's conformance statement.
        """
        url_params = _query_params(location if location is not None else self._location)
        if provider is not None:
            chosen = (
                provider
                if isinstance(provider, Provider)
                else Provider.model_validate(dict(provider))
            )
            if not chosen.url:
                chosen.url = server
            return chosen

        if url_params.get("fhirServiceUrl") and not url_params.get("iss"):
            return Provider(
                name="SMART on FHIR testing server",
                description="Direct FHIR access without OAuth2",
                url=server or url_params["fhirServiceUrl"],
                oauth2=None,
            )

        if not server:
            raise AuthorizationFlowError(
                "No FHIR server to authorize against; pass 'server' or launch with 'iss'"
            )
        conformance = await self._conformance(server)
        return Provider(
            name="SMART on FHIR server",
            description="OAuth2 endpoints from the conformance statement",
            url=server,
            oauth2=self._oauth_endpoints(conformance),
        )

    async def _conformance(self, server: str) -> Mapping[str, Any]:
        request = {
            "method": "GET",
            "url": f"{server.rstrip('/')}/metadata",
            "headers": {"Accept": "application/fhir+json"},
        }
        try:
            response = await self._adapter.http(request)
        except TransportError as exc:
            raise AuthorizationFlowError(CONFORMANCE_UNAVAILABLE, detail=exc.data) from exc
        if not isinstance(response.data, Mapping):
            raise AuthorizationFlowError(CONFORMANCE_UNAVAILABLE, detail=response.data)
        return response.data

    @staticmethod
    def _oauth_endpoints(conformance: Mapping[str, Any]) -> OAuth2Endpoints:
        try:
            security = conformance["rest"][0]["security"]
        except (KeyError, IndexError, TypeError) as exc:
            raise AuthorizationFlowError(
                "Conformance statement has no rest security section"
            ) from exc
        endpoints = OAuth2Endpoints()
        for extension in security.get("extension") or []:
            if extension.get("url") != OAUTH_URIS_EXTENSION:
                continue
            for item in extension.get("extension") or []:
                name = item.get("url")
                if name == "register":
                    endpoints.registration_uri = item.get("valueUri")
                elif name == "authorize":
                    endpoints.authorize_uri = item.get("valueUri")
                elif name == "token":
                    endpoints.token_uri = item.get("valueUri")
        if not endpoints.authorize_uri:
            raise AuthorizationFlowError(
                "Conformance statement does not advertise SMART OAuth2 endpoints",
                detail=security,
            )
        return endpoints

    async def resolve_auth_type(self, server: str) -> str:
        """Return `"oauth2"` for servers secured with SMART on FHIR, else `"none"`."""
        conformance = await self._conformance(server)
        try:
            code = conformance["rest"][0]["security"]["service"][0]["coding"][0]["code"]
        except (KeyError, IndexError, TypeError):
            return "none"
        if str(code).lower() == SMART_SECURITY_CODE:
            return "oauth2"
        return "none"

    # =========================================================================
    # Completion
    # =========================================================================

    async def ready(
        self,
        input: Mapping[str, Any] | str | None = None,
        callback: Callable[[SmartClient], Any] | None = None,
        errback: Callable[[AuthorizationFlowError], Any] | None = None,
        *,
        url: str | None = None,
    ) -> SmartClient | None:
        """
        Finish (or resume) a launch and return a configured `SmartClient`.

        `input` is either callback parameters (`{"code": ..., "state": ...}` or
        an implicit-grant token response) or a string whose fragment carries
        the implicit-grant parameters; when omitted the page URL is used.
        """
        location = url or self._location
        try:
            token = await self._token_for(input, location)
            client = self._complete(token)
        except Exception as exc:
            error = _as_flow_error(exc)
            logger.warning("SMART launch could not complete: %s", error)
            if errback is None:
                if error is exc:
                    raise
                raise error from exc
            await maybe_await(errback(error))
            return None
        if callback is not None:
            await maybe_await(callback(client))
        return client

    async def _token_for(
        self, input: Mapping[str, Any] | str | None, location: str
    ) -> dict[str, Any] | None:
        url_params = _query_params(location)
        given = dict(input) if isinstance(input, Mapping) else {}
        state_hint = given.get("state") or url_params.get("state")

        previous = self._store.load_token(state_hint)
        if previous and previous.get("state"):
            session = self._store.load_session(previous["state"])
            if session is not None and session.get("fake_token_response") is not None:
                logger.debug("replaying bypass launch")
                return previous
        if previous:
            if self._needs_refresh(previous):
                return await self._refresh(previous)
            logger.debug("reusing stored token response")
            return previous

        if given.get("code") or url_params.get("code"):
            callback_params = given or {
                "code": url_params.get("code"),
                "state": url_params.get("state"),
            }
            return await self._exchange_code(callback_params)

        if given:
            return given
        return _fragment_params(input if isinstance(input, str) else location)

    def _needs_refresh(self, token: Mapping[str, Any]) -> bool:
        if not token.get("refresh_token"):
            return False
        if "online_access" not in str(token.get("scope") or "").split():
            return False
        exp = _claims(token.get("access_token")).get("exp", token.get("exp"))
        if exp is None:
            return False
        return self._clock() >= float(exp) - REFRESH_MARGIN

    def _launch_for(self, state: str | None) -> LaunchParams:
        session = self._store.load_session(state)
        if session is None:
            raise AuthorizationFlowError(f"No launch session stored for state {state!r}")
        return LaunchParams.model_validate(session)

    @staticmethod
    def _token_uri(launch: LaunchParams) -> str:
        oauth2 = launch.provider.oauth2 if launch.provider else None
        if oauth2 is None or not oauth2.token_uri:
            raise AuthorizationFlowError("Launch session has no token endpoint")
        return oauth2.token_uri

    async def _exchange_code(self, params: Mapping[str, Any]) -> dict[str, Any]:
        launch = self._launch_for(params.get("state"))
        data = {
            "code": params.get("code"),
            "grant_type": "authorization_code",
            "redirect_uri": launch.client.redirect_uri,
        }
        headers = {"Accept": "application/json"}
        if launch.client.secret:
            headers["Authorization"] = _basic_client_auth(launch.client)
        else:
            data["client_id"] = launch.client.client_id
        response = await self._token_request(self._token_uri(launch), data, headers, NO_ACCESS_TOKEN)
        response.update(params)
        return response

    async def _refresh(self, previous: Mapping[str, Any]) -> dict[str, Any]:
        launch = self._launch_for(previous.get("state"))
        data = {"grant_type": "refresh_token", "refresh_token": previous["refresh_token"]}
        headers = {"Accept": "application/json"}
        if launch.client.secret:
            headers["Authorization"] = _basic_client_auth(launch.client)
        else:
            data["client_id"] = launch.client.client_id
        logger.debug("access token near expiry, refreshing")
        response = await self._token_request(self._token_uri(launch), data, headers, REFRESH_FAILED)
        return {**previous, **response}

    async def _token_request(
        self,
        token_uri: str,
        data: Mapping[str, Any],
        headers: Mapping[str, str],
        failure: str,
    ) -> dict[str, Any]:
        request = {
            "method": "POST",
            "url": token_uri,
            "data": {key: value for key, value in data.items() if value is not None},
            "headers": dict(headers),
        }
        try:
            response = await self._adapter.http(request)
        except TransportError as exc:
            raise AuthorizationFlowError(failure, detail=exc.data) from exc
        if not isinstance(response.data, Mapping):
            raise AuthorizationFlowError(failure, detail=response.data)
        return dict(response.data)

    def _complete(self, token: Mapping[str, Any] | None) -> SmartClient:
        if not token or not token.get("state"):
            raise AuthorizationFlowError(NO_STATE)
        token = dict(token)
        self._store.save_token(token)
        session = self._store.load_session(token["state"])
        if session is None:
            raise AuthorizationFlowError(f"No launch session stored for state {token['state']!r}")
        launch = LaunchParams.model_validate(session)

        fake = launch.fake_token_response
        if fake is not None:
            token = {"state": token["state"], **fake}

        service_url = (launch.provider.url if launch.provider else None) or launch.server
        id_claims = _claims(token.get("id_token"))
        user_id = id_claims.get("profile") or id_claims.get("fhirUser")

        auth: Credential
        if token.get("access_token"):
            auth = BearerCredential(token=token["access_token"])
        elif fake is None:
            raise AuthorizationFlowError(NO_ACCESS_TOKEN)
        else:
            auth = NoCredential()

        return SmartClient(
            service_url or "",
            auth=auth,
            patient_id=token.get("patient"),
            user_id=user_id,
            adapter=self._adapter,
            state=session,
            token_response=token,
        )
