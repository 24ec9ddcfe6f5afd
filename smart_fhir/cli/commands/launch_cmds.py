from __future__ import annotations

import asyncio
from typing import Any
from urllib.parse import parse_qs, urlencode, urlsplit

from smart_fhir.smart import SmartClient

from ..click_compat import RichCommand, RichGroup, click
from ..context import CLIContext
from ..errors import usage_error
from ..options import output_options
from ..runner import CommandOutput, run_command


@click.group(name="launch", cls=RichGroup)
def launch_group() -> None:
    """SMART on FHIR launch (authorization code flow)."""


def _launch_location(redirect_uri: str, url_params: dict[str, str]) -> str:
    """Stand-in for the launch page URL a browser would have been sent to."""
    if not url_params:
        return redirect_uri
    return f"{redirect_uri}?{urlencode(url_params)}"


def _client_summary(client: SmartClient, *, show_token: bool) -> dict[str, Any]:
    token = client.token_response
    access_token = token.access_token
    if access_token and not show_token:
        access_token = access_token[:4] + "..." if len(access_token) > 8 else "***"
    return {
        "serviceUrl": client.server.service_url,
        "patient": client.patient.id if client.patient else None,
        "userId": client.user_id,
        "scope": token.scope,
        "expiresIn": token.expires_in,
        "hasRefreshToken": bool(token.refresh_token),
        "accessToken": access_token,
    }


@launch_group.command(name="authorize", cls=RichCommand)
@click.option("--client-id", required=True, help="OAuth2 client id.")
@click.option("--scope", default="launch/patient openid profile", show_default=True)
@click.option("--redirect-uri", required=True, help="Absolute redirect URI registered for the app.")
@click.option("--secret", default=None, help="Client secret (confidential clients).")
@click.option("--iss", default=None, help="FHIR server to authorize against.")
@click.option(
    "--fhir-service-url",
    default=None,
    help="FHIR server used without OAuth2 (no authorization server involved).",
)
@click.option("--launch", "launch_id", default=None, help="EHR launch context id.")
@click.option("--patient-id", default=None, help="Patient for a --fhir-service-url launch.")
@output_options
@click.pass_obj
def launch_authorize(
    ctx: CLIContext,
    *,
    client_id: str,
    scope: str,
    redirect_uri: str,
    secret: str | None,
    iss: str | None,
    fhir_service_url: str | None,
    launch_id: str | None,
    patient_id: str | None,
) -> None:
    """Start a launch and print the URL to open in a browser."""

    def fn(ctx: CLIContext, warnings: list[str]) -> CommandOutput:
        if "://" not in redirect_uri:
            raise usage_error("--redirect-uri must be an absolute URL.")
        if not iss and not fhir_service_url:
            raise usage_error("Pass --iss (OAuth2 server) or --fhir-service-url.")
        url_params: dict[str, str] = {}
        if iss:
            url_params["iss"] = iss
        if fhir_service_url:
            url_params["fhirServiceUrl"] = fhir_service_url
        if launch_id:
            url_params["launch"] = launch_id
        if patient_id:
            url_params["patientId"] = patient_id
        registration = {
            "client_id": client_id,
            "scope": scope,
            "redirect_uri": redirect_uri,
            "secret": secret,
        }

        async def call() -> str | None:
            async with ctx.open_launcher(
                location=_launch_location(redirect_uri, url_params)
            ) as launcher:
                return await launcher.authorize(registration)

        target = asyncio.run(call()) or ""
        state = parse_qs(urlsplit(target).query).get("state", [None])[0]
        return CommandOutput(
            data={
                "authorizeUrl": target,
                "state": state,
                "bypass": bool(fhir_service_url and not iss),
            },
            warnings=warnings,
            api_called=bool(iss),
        )

    run_command(ctx, command="launch authorize", fn=fn)


@launch_group.command(name="complete", cls=RichCommand)
@click.argument("callback_url")
@click.option("--show-token", is_flag=True, help="Print the full access token.")
@output_options
@click.pass_obj
def launch_complete(ctx: CLIContext, callback_url: str, *, show_token: bool) -> None:
    """Finish a launch from the URL the browser was redirected to."""

    def fn(ctx: CLIContext, warnings: list[str]) -> CommandOutput:
        async def call() -> dict[str, Any]:
            async with ctx.open_launcher(location=callback_url) as launcher:
                client = await launcher.ready()
                assert client is not None
                return _client_summary(client, show_token=show_token)

        return CommandOutput(data=asyncio.run(call()), warnings=warnings, api_called=True)

    run_command(ctx, command="launch complete", fn=fn)


@launch_group.command(name="auth-type", cls=RichCommand)
@click.argument("server_url")
@output_options
@click.pass_obj
def launch_auth_type(ctx: CLIContext, server_url: str) -> None:
    """Report whether a FHIR server is secured with SMART on FHIR."""

    def fn(ctx: CLIContext, warnings: list[str]) -> CommandOutput:
        async def call() -> str:
            async with ctx.open_launcher() as launcher:
                return await launcher.resolve_auth_type(server_url)

        return CommandOutput(
            data={"server": server_url, "authType": asyncio.run(call())},
            warnings=warnings,
            api_called=True,
        )

    run_command(ctx, command="launch auth-type", fn=fn)
