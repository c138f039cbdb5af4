# src/playback_bff/token_manager.py

import asyncio
import logging
import typing
import weakref

from .auth_utils import SpotifyTokenClient
from .exceptions import RefreshDenied
from .session_data import SessionData
from .session_registry import SessionRegistry, short_id

logger = logging.getLogger(__name__)


class TokenLifecycleManager:
    """
    Hands out access tokens that are valid at return time, refreshing
    proactively (inside the safety margin) or on demand after an upstream 401.
    Refreshes are single-flight per session id.
    """

    def __init__(
            self,
            registry: SessionRegistry,
            token_client: SpotifyTokenClient,
            margin_seconds: float = 60,
            max_attempts: int = 3,
            retry_delay_seconds: float = 1.0,
            sleep: typing.Callable[[float], typing.Awaitable[None]] = asyncio.sleep,
    ):
        self.registry = registry
        self.token_client = token_client
        self.margin_seconds = margin_seconds
        self.max_attempts = max(1, max_attempts)
        self.retry_delay_seconds = retry_delay_seconds
        self.sleep = sleep
        # Entries vanish once no caller holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def _is_fresh(self, session: SessionData) -> bool:
        return session.token_valid(self.registry.clock(), self.margin_seconds)

    async def ensure_valid_token(self, session_id: typing.Optional[str]) -> str:
        session = self.registry.touch(session_id)
        if self._is_fresh(session):
            return session.access_token

        async with self._lock_for(session.session_id):
            # Another request may have refreshed while we waited for the lock
            session = self.registry.get(session.session_id)
            if self._is_fresh(session):
                return session.access_token
            token = await self._refresh(session)
        await self.registry.checkpoint("refresh")
        return token

    async def force_refresh(self, session_id: str, rejected_token: typing.Optional[str] = None) -> str:
        """
        Refresh regardless of the recorded expiry, because the upstream API
        declared `rejected_token` invalid.
        """
        session = self.registry.get(session_id)
        async with self._lock_for(session.session_id):
            session = self.registry.get(session.session_id)
            if (rejected_token is not None
                    and session.access_token is not None
                    and session.access_token != rejected_token
                    and session.token_valid(self.registry.clock())):
                logger.debug("Session %s already refreshed by a concurrent request", short_id(session_id))
                return session.access_token
            token = await self._refresh(session)
        await self.registry.checkpoint("refresh")
        return token

    async def _refresh(self, session: SessionData) -> str:
        if not session.refresh_token:
            raise RefreshDenied("Session has no refresh token. Please log in again.")

        last_error: typing.Optional[RefreshDenied] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                grant = await self.token_client.exchange_refresh(session.refresh_token)
            except RefreshDenied as e:
                last_error = e
                logger.warning("Refresh attempt %d/%d for session %s failed: %s",
                               attempt, self.max_attempts, short_id(session.session_id), e.message)
                if not e.retryable:
                    break
                if attempt < self.max_attempts:
                    await self.sleep(self.retry_delay_seconds)
                continue

            updated = self.registry.update_tokens(
                session.session_id,
                access_token=grant.access_token,
                expires_in=grant.expires_in,
                refresh_token=grant.refresh_token,
            )
            logger.info("Session %s token refreshed (expires_in=%s)", short_id(session.session_id), grant.expires_in)
            return updated.access_token

        logger.error("Session %s could not be refreshed", short_id(session.session_id))
        raise RefreshDenied(
            f"Token refresh failed. Please log in again. ({last_error.message if last_error else 'unknown error'})"
        )

