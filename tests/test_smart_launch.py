from __future__ import annotations

import json
import time
from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qs, urlsplit

import httpx
import jwt
import pytest

from smart_fhir.auth import NoCredential
from smart_fhir.clients.adapter import Adapter
from smart_fhir.clients.http import HttpxTransport
from smart_fhir.exceptions import AuthorizationFlowError
from smart_fhir.smart import (
    TOKEN_RESPONSE_KEY,
    FlatSessionStore,
    PerStateSessionStore,
    SmartClient,
    SmartLauncher,
)
from smart_fhir.smart.launch import (
    CONFORMANCE_UNAVAILABLE,
    NO_STATE,
    OAUTH_URIS_EXTENSION,
    REFRESH_FAILED,
)

SERVER = "https://fhir.example/r4"
TOKEN_URI = "https://idp/token"
AUTHORIZE_URI = "https://idp/authorize"
SIGNING_KEY = "test-signing-key-that-is-long-enough-for-hs256"

SESSION = {
    "client": {
        "client_id": "abc",
        "redirect_uri": "https://app/cb",
        "scope": "patient/*.read",
    },
    "server": SERVER,
    "provider": {
        "url": SERVER,
        "oauth2": {"authorize_uri": AUTHORIZE_URI, "token_uri": TOKEN_URI},
    },
}

CONFORMANCE = {
    "resourceType": "CapabilityStatement",
    "rest": [
        {
            "security": {
                "service": [{"coding": [{"code": "SMART-on-FHIR"}]}],
                "extension": [
                    {
                        "url": OAUTH_URIS_EXTENSION,
                        "extension": [
                            {"url": "authorize", "valueUri": AUTHORIZE_URI},
                            {"url": "token", "valueUri": TOKEN_URI},
                            {"url": "register", "valueUri": "https://idp/register"},
                        ],
                    }
                ],
            }
        }
    ],
}


class Server:
    """Records requests and answers from a path -> response table."""

    def __init__(self, routes: dict[str, Callable[[httpx.Request], httpx.Response]]):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(f"{request.url.host}{request.url.path}")
        if route is None:
            pytest.fail(f"Unexpected request: {request.method} {request.url!s}")
        return route(request)

    def to(self, host_path: str) -> list[httpx.Request]:
        return [r for r in self.requests if f"{r.url.host}{r.url.path}" == host_path]


def _json(body: Any, status: int = 200) -> Callable[[httpx.Request], httpx.Response]:
    return lambda request: httpx.Response(status, json=body, request=request)


def _form(request: httpx.Request) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


def _adapter(server: Server) -> Adapter:
    return Adapter(http=HttpxTransport(transport=httpx.MockTransport(server)))


def _patient_route(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"resourceType": "Patient", "id": "p1"}, request=request)


@pytest.fixture(params=[FlatSessionStore, PerStateSessionStore], ids=["flat", "per-state"])
def store_cls(request: pytest.FixtureRequest) -> type:
    return request.param


class TestCodeExchange:
    async def test_code_is_exchanged_and_client_uses_bearer_token(self, store_cls: type) -> None:
        server = Server(
            {
                "idp/token": _json({"access_token": "T", "patient": "p1"}),
                "fhir.example/r4/Patient/p1": _patient_route,
            }
        )
        storage = {"S1": json.dumps(SESSION)}
        store = store_cls(storage)
        launcher = SmartLauncher(_adapter(server), store)

        client = await launcher.ready({"code": "C1", "state": "S1"})

        assert isinstance(client, SmartClient)
        [token_request] = server.to("idp/token")
        assert token_request.method == "POST"
        assert _form(token_request) == {
            "code": "C1",
            "grant_type": "authorization_code",
            "redirect_uri": "https://app/cb",
            "client_id": "abc",
        }
        assert "authorization" not in token_request.headers

        stored = store.load_token("S1")
        assert stored == {"access_token": "T", "patient": "p1", "code": "C1", "state": "S1"}
        if store_cls is FlatSessionStore:
            assert json.loads(storage[TOKEN_RESPONSE_KEY])["access_token"] == "T"
        else:
            assert json.loads(storage["S1"])[TOKEN_RESPONSE_KEY]["access_token"] == "T"

        assert client.server.service_url == SERVER
        assert client.patient is not None
        assert client.patient.id == "p1"
        await client.patient.read()
        assert server.requests[-1].headers["authorization"] == "Bearer T"
        await launcher.aclose()

    async def test_code_taken_from_callback_url(self) -> None:
        server = Server({"idp/token": _json({"access_token": "T"})})
        launcher = SmartLauncher(
            _adapter(server),
            FlatSessionStore({"S1": json.dumps(SESSION)}),
            location="https://app/cb?code=C1&state=S1",
        )
        client = await launcher.ready()
        assert client is not None
        assert client.token_response.access_token == "T"
        assert _form(server.to("idp/token")[0])["code"] == "C1"

    async def test_confidential_client_uses_basic_auth(self) -> None:
        session = json.loads(json.dumps(SESSION))
        session["client"]["secret"] = "s3cret"
        server = Server({"idp/token": _json({"access_token": "T"})})
        launcher = SmartLauncher(_adapter(server), FlatSessionStore({"S1": json.dumps(session)}))

        await launcher.ready({"code": "C1", "state": "S1"})

        request = server.to("idp/token")[0]
        assert request.headers["authorization"] == "Basic YWJjOnMzY3JldA=="
        assert "client_id" not in _form(request)

    async def test_token_endpoint_failure_raises_flow_error(self) -> None:
        server = Server({"idp/token": _json({"error": "invalid_grant"}, status=400)})
        launcher = SmartLauncher(_adapter(server), FlatSessionStore({"S1": json.dumps(SESSION)}))
        with pytest.raises(AuthorizationFlowError) as excinfo:
            await launcher.ready({"code": "C1", "state": "S1"})
        assert excinfo.value.detail == {"error": "invalid_grant"}

    async def test_id_token_profile_becomes_user_id(self) -> None:
        id_token = jwt.encode({"profile": "Practitioner/42"}, SIGNING_KEY, algorithm="HS256")
        server = Server(
            {
                "idp/token": _json({"access_token": "T", "id_token": id_token}),
                "fhir.example/r4/Practitioner/42": _json(
                    {"resourceType": "Practitioner", "id": "42"}
                ),
            }
        )
        launcher = SmartLauncher(_adapter(server), FlatSessionStore({"S1": json.dumps(SESSION)}))
        client = await launcher.ready({"code": "C1", "state": "S1"})
        assert client is not None
        assert client.user_id == "Practitioner/42"
        response = await client.user.read()
        assert response.data["id"] == "42"


class TestImplicitAndStoredTokens:
    async def test_fragment_parameters_complete_implicit_grant(self) -> None:
        server = Server({})
        launcher = SmartLauncher(_adapter(server), FlatSessionStore({"S1": json.dumps(SESSION)}))
        client = await launcher.ready(url="https://app/cb#access_token=T&state=S1&patient=p9")
        assert client is not None
        assert client.authenticated() == {"Authorization": "Bearer T"}
        assert client.patient is not None
        assert client.patient.id == "p9"
        assert server.requests == []

    async def test_missing_state_raises(self) -> None:
        launcher = SmartLauncher(_adapter(Server({})), FlatSessionStore())
        with pytest.raises(AuthorizationFlowError, match="No 'state' parameter"):
            await launcher.ready({"access_token": "T"})

    async def test_errback_receives_failure(self) -> None:
        errors: list[AuthorizationFlowError] = []
        launcher = SmartLauncher(_adapter(Server({})), FlatSessionStore())
        result = await launcher.ready({"access_token": "T"}, errback=errors.append)
        assert result is None
        assert [error.message for error in errors] == [NO_STATE]

    async def test_callback_receives_client(self) -> None:
        seen: list[SmartClient] = []
        storage = {"S1": json.dumps(SESSION)}
        store = FlatSessionStore(storage)
        store.save_token({"state": "S1", "access_token": "T"})
        launcher = SmartLauncher(_adapter(Server({})), store)
        client = await launcher.ready(callback=seen.append)
        assert seen == [client]

    async def test_fresh_stored_token_is_reused(self, store_cls: type) -> None:
        now = time.time()
        access_token = jwt.encode({"exp": int(now) + 3600}, SIGNING_KEY, algorithm="HS256")
        store = store_cls({"S1": json.dumps(SESSION)})
        store.save_token(
            {
                "state": "S1",
                "access_token": access_token,
                "refresh_token": "R",
                "scope": "online_access patient/*.read",
            }
        )
        server = Server({})
        launcher = SmartLauncher(_adapter(server), store, clock=lambda: now)
        client = await launcher.ready({"state": "S1"})
        assert client is not None
        assert client.token_response.access_token == access_token
        assert server.requests == []

    async def test_token_near_expiry_is_refreshed(self, store_cls: type) -> None:
        now = time.time()
        access_token = jwt.encode({"exp": int(now) + 60}, SIGNING_KEY, algorithm="HS256")
        store = store_cls({"S1": json.dumps(SESSION)})
        store.save_token(
            {
                "state": "S1",
                "access_token": access_token,
                "refresh_token": "R",
                "scope": "online_access patient/*.read",
                "patient": "p1",
            }
        )
        server = Server(
            {
                "idp/token": _json({"access_token": "T2", "expires_in": 3600}),
                "fhir.example/r4/Patient/p1": _patient_route,
            }
        )
        launcher = SmartLauncher(_adapter(server), store, clock=lambda: now)

        client = await launcher.ready({"state": "S1"})

        assert client is not None
        assert _form(server.to("idp/token")[0]) == {
            "grant_type": "refresh_token",
            "refresh_token": "R",
            "client_id": "abc",
        }
        stored = store.load_token("S1")
        assert stored["access_token"] == "T2"
        assert stored["refresh_token"] == "R"
        assert stored["patient"] == "p1"
        await client.patient.read()
        assert server.requests[-1].headers["authorization"] == "Bearer T2"

    async def test_refresh_needs_online_access_scope(self) -> None:
        now = time.time()
        store = FlatSessionStore({"S1": json.dumps(SESSION)})
        store.save_token(
            {"state": "S1", "access_token": "opaque", "refresh_token": "R", "exp": int(now)}
        )
        server = Server({})
        launcher = SmartLauncher(_adapter(server), store, clock=lambda: now)
        client = await launcher.ready()
        assert client is not None
        assert server.requests == []

    async def test_failed_refresh_reports_relaunch(self) -> None:
        now = time.time()
        store = FlatSessionStore({"S1": json.dumps(SESSION)})
        store.save_token(
            {
                "state": "S1",
                "access_token": "opaque",
                "refresh_token": "R",
                "scope": "online_access",
                "exp": int(now) + 10,
            }
        )
        server = Server({"idp/token": _json({"error": "invalid_grant"}, status=401)})
        launcher = SmartLauncher(_adapter(server), store, clock=lambda: now)
        with pytest.raises(AuthorizationFlowError) as excinfo:
            await launcher.ready()
        assert excinfo.value.message == REFRESH_FAILED


class TestAuthorize:
    async def test_discovers_endpoints_and_builds_authorize_url(self) -> None:
        server = Server({"fhir.example/r4/metadata": _json(CONFORMANCE)})
        redirects: list[str] = []
        storage: dict[str, str] = {TOKEN_RESPONSE_KEY: json.dumps({"state": "old"})}
        launcher = SmartLauncher(
            _adapter(server),
            FlatSessionStore(storage),
            location=f"https://app/launch.html?iss={SERVER}&launch=L1",
            redirect=redirects.append,
        )

        target = await launcher.authorize({"client_id": "abc", "scope": "patient/*.read"})

        assert target is not None
        assert redirects == [target]
        assert TOKEN_RESPONSE_KEY not in storage
        parts = urlsplit(target)
        assert f"{parts.scheme}://{parts.netloc}{parts.path}" == AUTHORIZE_URI
        query = {key: values[0] for key, values in parse_qs(parts.query).items()}
        state = query.pop("state")
        assert query == {
            "client_id": "abc",
            "response_type": "code",
            "scope": "patient/*.read launch",
            "redirect_uri": "https://app/",
            "aud": SERVER,
            "launch": "L1",
        }
        session = json.loads(storage[state])
        assert session["server"] == SERVER
        assert session["provider"]["oauth2"]["token_uri"] == TOKEN_URI
        assert session["client"]["launch"] == "L1"

    async def test_explicit_state_and_relative_redirect(self) -> None:
        server = Server({"fhir.example/r4/metadata": _json(CONFORMANCE)})
        storage: dict[str, str] = {}
        launcher = SmartLauncher(_adapter(server), PerStateSessionStore(storage))
        target = await launcher.authorize(
            {
                "client": {"client_id": "abc", "redirect_uri": "cb.html", "state": "fixed"},
                "server": SERVER,
            },
            url="https://app/apps/launch.html",
        )
        assert target is not None
        query = parse_qs(urlsplit(target).query)
        assert query["state"] == ["fixed"]
        assert query["redirect_uri"] == ["https://app/apps/cb.html"]
        assert "fixed" in storage

    async def test_discovery_failure_goes_to_errback(self) -> None:
        server = Server({"fhir.example/r4/metadata": _json({}, status=500)})
        errors: list[AuthorizationFlowError] = []
        launcher = SmartLauncher(_adapter(server), FlatSessionStore())
        result = await launcher.authorize(
            {"client_id": "abc", "redirect_uri": "https://app/cb"},
            errors.append,
            url=f"https://app/launch?iss={SERVER}",
        )
        assert result is None
        assert [error.message for error in errors] == [CONFORMANCE_UNAVAILABLE]

    async def test_conformance_without_oauth_extension_raises(self) -> None:
        conformance = {"rest": [{"security": {"extension": []}}]}
        server = Server({"fhir.example/r4/metadata": _json(conformance)})
        launcher = SmartLauncher(_adapter(server), FlatSessionStore())
        with pytest.raises(AuthorizationFlowError, match="SMART OAuth2 endpoints"):
            await launcher.authorize(
                {"client": {"client_id": "abc", "redirect_uri": "https://app/cb"}, "server": SERVER}
            )

    async def test_bypass_launch_round_trip(self, store_cls: type) -> None:
        server = Server({"fhir.example/r4/Patient/p1": _patient_route})
        storage: dict[str, str] = {}
        launcher = SmartLauncher(
            _adapter(server),
            store_cls(storage),
            location=f"https://app/launch.html?fhirServiceUrl={SERVER}&patientId=p1",
        )

        target = await launcher.authorize({"client_id": "abc", "scope": "patient/*.read"})

        assert target is not None
        assert target.startswith("https://app/?state=")
        assert server.requests == []
        state = parse_qs(urlsplit(target).query)["state"][0]
        assert json.loads(storage[state])["fake_token_response"] == {"patient": "p1"}

        client = await launcher.ready(url=target)

        assert client is not None
        assert client.server.service_url == SERVER
        assert client.server.auth == NoCredential()
        assert client.patient is not None
        assert client.patient.id == "p1"
        response = await client.patient.read()
        assert response.data["id"] == "p1"
        assert "authorization" not in server.requests[-1].headers

    async def test_bypass_redirect_keeps_existing_query(self) -> None:
        server = Server({"fhir.example/r4/Patient/p1": _patient_route})
        storage: dict[str, str] = {}
        launcher = SmartLauncher(
            _adapter(server),
            FlatSessionStore(storage),
            location=f"https://app/launch.html?fhirServiceUrl={SERVER}&patientId=p1",
        )

        target = await launcher.authorize(
            {"client_id": "abc", "redirect_uri": "https://app/cb?tenant=1"}
        )

        assert target is not None
        assert target.startswith("https://app/cb?tenant=1&state=")
        query = parse_qs(urlsplit(target).query)
        assert query["tenant"] == ["1"]
        assert len(query["state"]) == 1

        client = await launcher.ready(url=target)
        assert client is not None
        assert client.server.service_url == SERVER

    async def test_launch_url_iss_overrides_given_server(self) -> None:
        server = Server({"fhir.example/r4/metadata": _json(CONFORMANCE)})
        storage: dict[str, str] = {}
        launcher = SmartLauncher(
            _adapter(server),
            PerStateSessionStore(storage),
            location=f"https://app/launch.html?iss={SERVER}&launch=L1",
        )

        target = await launcher.authorize(
            {
                "client": {"client_id": "abc", "redirect_uri": "https://app/cb"},
                "server": "https://stale.example/fhir",
            }
        )

        assert target is not None
        query = {key: values[0] for key, values in parse_qs(urlsplit(target).query).items()}
        assert query["aud"] == SERVER
        assert json.loads(storage[query["state"]])["server"] == SERVER
        assert [f"{r.url.host}{r.url.path}" for r in server.requests] == [
            "fhir.example/r4/metadata"
        ]

    async def test_resolve_auth_type(self) -> None:
        insecure = {"rest": [{"security": {"service": [{"coding": [{"code": "Basic"}]}]}}]}
        server = Server(
            {
                "fhir.example/r4/metadata": _json(CONFORMANCE),
                "open.example/fhir/metadata": _json(insecure),
            }
        )
        launcher = SmartLauncher(_adapter(server), FlatSessionStore())
        assert await launcher.resolve_auth_type(SERVER) == "oauth2"
        assert await launcher.resolve_auth_type("https://open.example/fhir") == "none"
