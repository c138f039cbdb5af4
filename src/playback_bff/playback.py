# src/playback_bff/playback.py

import logging
import typing

import httpx
from fastapi import status

from .exceptions import RefreshDenied, UpstreamRejected
from .session_registry import short_id
from .token_manager import TokenLifecycleManager

logger = logging.getLogger(__name__)

NO_ACTIVE_DEVICE_MESSAGE = "No active device found. Start playback on a Spotify device first."


class NoActiveDevice:
    """Informational result of current_state() when nothing is playing anywhere."""

    message = NO_ACTIVE_DEVICE_MESSAGE

    def __repr__(self) -> str:
        return "NO_ACTIVE_DEVICE"


NO_ACTIVE_DEVICE = NoActiveDevice()


def _json_body(response: httpx.Response) -> typing.Any:
    try:
        return response.json()
    except ValueError:
        logger.warning("Spotify API returned a non-JSON body with status %s", response.status_code)
        raise UpstreamRejected("Malformed response from Spotify", status_code=status.HTTP_502_BAD_GATEWAY)


def _upstream_error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return response.reason_phrase or str(response.status_code)


class PlaybackRelay:
    """Pass-through of playback commands to the Spotify Web API."""

    def __init__(self, token_manager: TokenLifecycleManager, http_client: httpx.AsyncClient, api_base_url: str):
        self.token_manager = token_manager
        self.http_client = http_client
        self.api_base_url = api_base_url.rstrip("/")

    async def _send(self, method: str, path: str, token: str,
                    params: typing.Optional[typing.Dict[str, typing.Any]] = None) -> httpx.Response:
        try:
            return await self.http_client.request(
                method,
                f"{self.api_base_url}{path}",
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.RequestError as e:
            logger.error("Request error calling Spotify %s %s: %s", method, path, e)
            raise UpstreamRejected(f"Could not connect to Spotify: {e}") from e

    async def _call(self, session_id: str, method: str, path: str,
                    params: typing.Optional[typing.Dict[str, typing.Any]] = None) -> httpx.Response:
        token = await self.token_manager.ensure_valid_token(session_id)
        response = await self._send(method, path, token, params)

        if response.status_code == status.HTTP_401_UNAUTHORIZED:
            # The server, not the clock, declared the token invalid
            logger.info("Spotify answered 401 for session %s, forcing a refresh", short_id(session_id))
            token = await self.token_manager.force_refresh(session_id, rejected_token=token)
            response = await self._send(method, path, token, params)
            if response.status_code == status.HTTP_401_UNAUTHORIZED:
                raise RefreshDenied("Spotify rejected the refreshed token. Please log in again.")

        if response.is_success:
            return response

        message = _upstream_error_message(response)
        logger.warning("Spotify %s %s failed (HTTP %s): %s", method, path, response.status_code, message)
        raise UpstreamRejected(message, status_code=response.status_code)

    # --- Commands ---

    async def seek(self, session_id: str, position_ms: int) -> None:
        if position_ms < 0:
            raise ValueError("position_ms must not be negative")
        await self._call(session_id, "PUT", "/me/player/seek", params={"position_ms": int(position_ms)})

    async def play(self, session_id: str) -> None:
        await self._call(session_id, "PUT", "/me/player/play")

    async def pause(self, session_id: str) -> None:
        await self._call(session_id, "PUT", "/me/player/pause")

    async def next(self, session_id: str) -> None:
        await self._call(session_id, "POST", "/me/player/next")

    async def previous(self, session_id: str) -> None:
        await self._call(session_id, "POST", "/me/player/previous")

    # --- State ---

    async def current_state(self, session_id: str) -> typing.Union[typing.Dict[str, typing.Any], NoActiveDevice]:
        response = await self._call(session_id, "GET", "/me/player")
        if response.status_code == status.HTTP_204_NO_CONTENT or not response.content:
            return NO_ACTIVE_DEVICE
        return _json_body(response)

    async def _currently_playing(self, session_id: str) -> typing.Optional[typing.Dict[str, typing.Any]]:
        response = await self._call(session_id, "GET", "/me/player/currently-playing")
        if response.status_code == status.HTTP_204_NO_CONTENT or not response.content:
            return None
        return _json_body(response)

    async def seek_relative(self, session_id: str, shift_ms: int) -> int:
        """Move the playback position by `shift_ms` (clamped at 0). Returns the new position."""
        playing = await self._currently_playing(session_id)
        if not playing or playing.get("progress_ms") is None:
            raise UpstreamRejected("Could not read the current playback position.",
                                   status_code=status.HTTP_404_NOT_FOUND)
        position = max(0, int(playing["progress_ms"]) + int(shift_ms))
        await self.seek(session_id, position)
        return position

    async def now_playing(self, session_id: str) -> typing.Dict[str, typing.Any]:
        playing = await self._currently_playing(session_id)
        item = (playing or {}).get("item")
        if not item:
            return {"playing": False, "track": None, "artists": [], "album": None}
        return {
            "playing": bool(playing.get("is_playing", False)),
            "track": item.get("name"),
            "artists": [a.get("name") for a in item.get("artists", [])],
            "album": (item.get("album") or {}).get("name"),
        }
