# src/playback_bff/main.py

import asyncio
import logging
import time
import typing
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from urllib.parse import urlencode

import httpx
import uvicorn
from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse

from .auth_utils import SpotifyTokenClient
from .config import Settings, configure_logging, settings as default_settings
from .exceptions import AuthFailure, ExchangeRejected
from .maintenance import MaintenanceTasks
from .persistence import SessionFilePersistence
from .playback import NO_ACTIVE_DEVICE, PlaybackRelay
from .session_registry import DEFAULT_SESSION_ID, SessionRegistry, short_id
from .session_store import SessionStore
from .token_manager import TokenLifecycleManager

logger = logging.getLogger(__name__)

# Routes answering {"success": false, "error": ...} instead of {"error": ...}
PLAYBACK_COMMAND_PATHS = {"/seek", "/play", "/pause", "/next", "/previous", "/logout"}


@dataclass
class PlaybackServices:
    settings: Settings
    http_client: httpx.AsyncClient
    registry: SessionRegistry
    token_client: SpotifyTokenClient
    token_manager: TokenLifecycleManager
    relay: PlaybackRelay
    owns_http_client: bool = True
    maintenance: MaintenanceTasks = field(default_factory=MaintenanceTasks)


def build_services(
        app_settings: Settings,
        http_client: typing.Optional[httpx.AsyncClient] = None,
        store: typing.Optional[SessionStore] = None,
        clock: typing.Callable[[], float] = time.time,
        sleep: typing.Callable[[float], typing.Awaitable[None]] = asyncio.sleep,
) -> PlaybackServices:
    owns_http_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=app_settings.HTTP_TIMEOUT_SECONDS)

    persistence = None
    if app_settings.SESSION_STORE_PATH:
        persistence = SessionFilePersistence(app_settings.SESSION_STORE_PATH)

    registry = SessionRegistry(store=store, persistence=persistence,
                               single_user=app_settings.SINGLE_USER_MODE, clock=clock)
    token_client = SpotifyTokenClient(app_settings, http_client)
    token_manager = TokenLifecycleManager(
        registry,
        token_client,
        margin_seconds=app_settings.TOKEN_REFRESH_MARGIN_SECONDS,
        max_attempts=app_settings.REFRESH_MAX_ATTEMPTS,
        retry_delay_seconds=app_settings.REFRESH_RETRY_DELAY_SECONDS,
        sleep=sleep,
    )
    relay = PlaybackRelay(token_manager, http_client, app_settings.SPOTIFY_API_BASE_URL)
    return PlaybackServices(
        settings=app_settings,
        http_client=http_client,
        registry=registry,
        token_client=token_client,
        token_manager=token_manager,
        relay=relay,
        owns_http_client=owns_http_client,
    )


def get_services(request: Request) -> PlaybackServices:
    return request.app.state.services


def get_session_id(
        session_id: typing.Optional[str] = Query(None),
        services: PlaybackServices = Depends(get_services),
) -> typing.Optional[str]:
    if not session_id and services.settings.SINGLE_USER_MODE:
        return DEFAULT_SESSION_ID
    return session_id


def safe_redirect_path(hint: typing.Optional[str]) -> typing.Optional[str]:
    """Only same-site relative paths are accepted as post-login targets."""
    if not hint or not hint.startswith("/") or hint.startswith("//") or "\\" in hint:
        return None
    return hint.split("#", 1)[0]


def create_app(
        app_settings: typing.Optional[Settings] = None,
        services: typing.Optional[PlaybackServices] = None,
) -> FastAPI:
    app_settings = app_settings or (services.settings if services else default_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("--- PlaybackBFF (FastAPI) Starting Up ---")
        logger.info("Spotify Client ID: %s", app_settings.SPOTIFY_CLIENT_ID)
        logger.info("Spotify Client Secret is set: %s", "Yes" if app_settings.SPOTIFY_CLIENT_SECRET else "NO")
        logger.info("Spotify Redirect URI: %s", app_settings.SPOTIFY_REDIRECT_URI)
        logger.info("Spotify Scopes: %s", app_settings.SPOTIFY_SCOPES)
        logger.info("Single-user mode: %s", app_settings.SINGLE_USER_MODE)
        logger.info("Session store: %s", app_settings.SESSION_STORE_PATH or "memory only")

        svc = app.state.services = services or build_services(app_settings)
        svc.registry.restore()
        svc.maintenance.start(
            svc.registry,
            retention_seconds=app_settings.SESSION_RETENTION_SECONDS,
            sweep_interval_seconds=app_settings.SESSION_SWEEP_INTERVAL_SECONDS,
            persist_interval_seconds=app_settings.SESSION_PERSIST_INTERVAL_SECONDS,
        )
        try:
            yield
        finally:
            await svc.maintenance.stop()
            await svc.registry.checkpoint("shutdown")
            if svc.owns_http_client:
                await svc.http_client.aclose()
            logger.info("--- PlaybackBFF shut down ---")

    app = FastAPI(
        title="PlaybackBFF API",
        description="Backend-For-Frontend handling Spotify authorization and relaying playback commands.",
        version="0.1.0",
        lifespan=lifespan,
    )

    # --- Error responses ---

    @app.exception_handler(AuthFailure)
    async def auth_failure_handler(request: Request, exc: AuthFailure):
        logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
        if request.url.path in PLAYBACK_COMMAND_PATHS:
            content = {"success": False, "error": exc.message}
        else:
            content = {"error": exc.message}
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        messages = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ())[1:]) or 'request'}: {err.get('msg')}"
            for err in exc.errors()
        )
        if request.url.path in PLAYBACK_COMMAND_PATHS:
            content = {"success": False, "error": messages}
        else:
            content = {"error": messages}
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=content)

    # --- Authentication routes ---

    @app.get("/")
    async def home():
        return {"message": "Playback BFF is running!"}

    @app.get("/login")
    async def login(
            redirect_uri: typing.Optional[str] = Query(None),
            svc: PlaybackServices = Depends(get_services),
    ):
        session = svc.registry.create(redirect_after_login=safe_redirect_path(redirect_uri))
        auth_url = svc.token_client.build_auth_url(state=session.session_id)
        logger.info("/login - Redirecting session %s to the authorization server", short_id(session.session_id))
        return RedirectResponse(url=auth_url, status_code=status.HTTP_302_FOUND)

    @app.get("/callback")
    async def callback(
            code: typing.Optional[str] = Query(None),
            state: typing.Optional[str] = Query(None),
            error: typing.Optional[str] = Query(None),
            svc: PlaybackServices = Depends(get_services),
    ):
        if error:
            pending = svc.registry.find(state) if state else None
            if pending is not None and pending.is_pending:
                svc.registry.delete(state)
            logger.warning("/callback - Authorization server returned error: %s", error)
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST,
                                content={"error": f"Authorization failed: {error}"})
        if not code or not state:
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST,
                                content={"error": "Missing code or state."})

        session = svc.registry.get(state)
        try:
            grant = await svc.token_client.exchange_code(code)
        except ExchangeRejected:
            # Authorization codes are single-use; an unfinished login has to start over
            if session.is_pending:
                svc.registry.delete(session.session_id)
            raise

        session = svc.registry.update_tokens(
            session.session_id,
            access_token=grant.access_token,
            expires_in=grant.expires_in,
            refresh_token=grant.refresh_token,
        )
        await svc.registry.checkpoint("login")

        fragment = urlencode({"session_id": session.session_id, "access_token": session.access_token})
        target = f"{session.redirect_after_login or '/'}#{fragment}"
        logger.info("/callback - Session %s authorized", short_id(session.session_id))
        return RedirectResponse(url=target, status_code=status.HTTP_302_FOUND)

    @app.get("/token")
    async def token(
            session_id: typing.Optional[str] = Depends(get_session_id),
            svc: PlaybackServices = Depends(get_services),
    ):
        access_token = await svc.token_manager.ensure_valid_token(session_id)
        return {"access_token": access_token}

    @app.get("/session-status")
    async def session_status(
            session_id: typing.Optional[str] = Depends(get_session_id),
            svc: PlaybackServices = Depends(get_services),
    ):
        session = svc.registry.find(session_id)
        if session is None:
            return {"valid": False, "token_valid": False, "expires_in": 0, "can_refresh": False, "session_age": 0}
        now = svc.registry.clock()
        return {
            "valid": True,
            "token_valid": session.token_valid(now),
            "expires_in": session.expires_in(now),
            "can_refresh": session.can_refresh,
            "session_age": max(0, int(now - session.created_at)),
        }

    @app.get("/logout")
    async def logout(
            session_id: typing.Optional[str] = Depends(get_session_id),
            svc: PlaybackServices = Depends(get_services),
    ):
        svc.registry.get(session_id)
        svc.registry.delete(session_id)
        await svc.registry.checkpoint("logout")
        logger.info("/logout - Session %s cleared", short_id(session_id))
        return {"success": True}

    # --- Playback routes ---

    @app.get("/seek")
    async def seek(
            position: typing.Optional[int] = Query(None, ge=0),
            shift: typing.Optional[int] = Query(None),
            session_id: typing.Optional[str] = Depends(get_session_id),
            svc: PlaybackServices = Depends(get_services),
    ):
        if position is not None:
            await svc.relay.seek(session_id, position)
            return {"success": True}
        if shift is not None:
            new_position = await svc.relay.seek_relative(session_id, shift)
            return {"success": True, "position": new_position}
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST,
                            content={"success": False, "error": "Missing position or shift."})

    @app.get("/play")
    async def play(session_id: typing.Optional[str] = Depends(get_session_id),
                   svc: PlaybackServices = Depends(get_services)):
        await svc.relay.play(session_id)
        return {"success": True}

    @app.get("/pause")
    async def pause(session_id: typing.Optional[str] = Depends(get_session_id),
                    svc: PlaybackServices = Depends(get_services)):
        await svc.relay.pause(session_id)
        return {"success": True}

    @app.get("/next")
    async def next_track(session_id: typing.Optional[str] = Depends(get_session_id),
                         svc: PlaybackServices = Depends(get_services)):
        await svc.relay.next(session_id)
        return {"success": True}

    @app.get("/previous")
    async def previous_track(session_id: typing.Optional[str] = Depends(get_session_id),
                             svc: PlaybackServices = Depends(get_services)):
        await svc.relay.previous(session_id)
        return {"success": True}

    @app.get("/current-playback")
    async def current_playback(session_id: typing.Optional[str] = Depends(get_session_id),
                               svc: PlaybackServices = Depends(get_services)):
        state = await svc.relay.current_state(session_id)
        if state is NO_ACTIVE_DEVICE:
            return {"error": NO_ACTIVE_DEVICE.message}
        return state

    @app.get("/now-playing")
    async def now_playing(session_id: typing.Optional[str] = Depends(get_session_id),
                          svc: PlaybackServices = Depends(get_services)):
        return await svc.relay.now_playing(session_id)

    return app


app = create_app()


def run() -> None:
    configure_logging(default_settings.LOG_LEVEL)
    uvicorn.run(app, host=default_settings.HOST, port=default_settings.PORT)


if __name__ == "__main__":
    run()
