# src/playback_bff/auth_utils.py

import base64
import logging
import typing
from dataclasses import dataclass
from urllib.parse import urlencode

import httpx
from fastapi import status

from .config import Settings
from .exceptions import ExchangeRejected, RefreshDenied

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenGrant:
    """Token endpoint response, reduced to the fields this service uses."""

    access_token: str
    expires_in: int
    refresh_token: typing.Optional[str] = None

    @staticmethod
    def from_token_response(payload: typing.Dict[str, typing.Any]) -> "TokenGrant":
        return TokenGrant(
            access_token=str(payload["access_token"]),
            expires_in=int(payload.get("expires_in", 3600)),
            refresh_token=payload.get("refresh_token"),
        )


def basic_auth_header(client_id: str, client_secret: str) -> str:
    raw = f"{client_id}:{client_secret}".encode("utf-8")
    return "Basic " + base64.b64encode(raw).decode("ascii")


def _error_description(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("error_description") or body.get("error") or body)
    return str(body)


class SpotifyTokenClient:
    """Authorization-code and refresh-token flows against the Spotify accounts service."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self.settings = settings
        self.http_client = http_client

    @property
    def redirect_uri(self) -> str:
        return str(self.settings.SPOTIFY_REDIRECT_URI)

    def build_auth_url(self, state: str, scopes: typing.Optional[typing.List[str]] = None,
                       show_dialog: bool = False) -> str:
        """
        Builds the authorization URL. The 'state' is the session id created
        by the /login route, echoed back to /callback by the accounts service.
        """
        if not scopes:
            scopes = self.settings.SPOTIFY_SCOPES

        params = {
            "response_type": "code",
            "client_id": self.settings.SPOTIFY_CLIENT_ID,
            "scope": " ".join(scopes),
            "redirect_uri": self.redirect_uri,
            "state": state,
        }
        if show_dialog:
            params["show_dialog"] = "true"
        auth_url = f"{self.settings.SPOTIFY_AUTHORIZE_URL}?{urlencode(params)}"
        logger.debug("Built auth URL for state %s, redirect URI %s", state[:8], self.redirect_uri)
        return auth_url

    async def _post_token(self, form: typing.Dict[str, str]) -> httpx.Response:
        return await self.http_client.post(
            self.settings.SPOTIFY_TOKEN_URL,
            data=form,
            headers={
                "Authorization": basic_auth_header(self.settings.SPOTIFY_CLIENT_ID,
                                                   self.settings.SPOTIFY_CLIENT_SECRET),
                "Content-Type": "application/x-www-form-urlencoded",
            },
        )

    async def exchange_code(self, code: str, redirect_uri: typing.Optional[str] = None) -> TokenGrant:
        """
        Exchanges an authorization code for tokens. Codes are single-use, so
        a failure here is never retried.
        """
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri or self.redirect_uri,
        }
        try:
            response = await self._post_token(form)
        except httpx.RequestError as e:
            logger.error("Token endpoint unreachable during code exchange: %s", e)
            raise ExchangeRejected(f"Could not reach the authorization server: {e}",
                                   status_code=status.HTTP_502_BAD_GATEWAY) from e

        if response.status_code != status.HTTP_200_OK:
            detail = _error_description(response)
            logger.warning("Code exchange rejected (HTTP %s): %s", response.status_code, detail)
            raise ExchangeRejected(f"Failed to acquire token: {detail}")

        try:
            grant = TokenGrant.from_token_response(response.json())
        except (ValueError, KeyError, TypeError) as e:
            raise ExchangeRejected(f"Malformed token response: {e}",
                                   status_code=status.HTTP_502_BAD_GATEWAY) from e
        logger.info("Authorization code exchanged (expires_in=%s, refresh_token=%s)",
                    grant.expires_in, "yes" if grant.refresh_token else "no")
        return grant

    async def exchange_refresh(self, refresh_token: str) -> TokenGrant:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        try:
            response = await self._post_token(form)
        except httpx.RequestError as e:
            raise RefreshDenied(f"Could not reach the authorization server: {e}", retryable=True) from e

        if response.status_code != status.HTTP_200_OK:
            detail = _error_description(response)
            retryable = (response.status_code >= 500
                         or response.status_code == status.HTTP_429_TOO_MANY_REQUESTS)
            raise RefreshDenied(f"Token refresh failed (HTTP {response.status_code}): {detail}",
                                retryable=retryable)

        try:
            return TokenGrant.from_token_response(response.json())
        except (ValueError, KeyError, TypeError) as e:
            raise RefreshDenied(f"Malformed token response: {e}", retryable=True) from e
