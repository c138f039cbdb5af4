# src/playback_bff/session_registry.py

import asyncio
import logging
import secrets
import time
import typing

from .exceptions import InvalidSession, SessionPersistenceError
from .persistence import SessionFilePersistence
from .session_data import SessionData
from .session_store import InMemorySessionStore, SessionStore

logger = logging.getLogger(__name__)

# Well-known id of the implicit session used in single-user mode
DEFAULT_SESSION_ID = "default"


def short_id(session_id: typing.Optional[str]) -> str:
    return (session_id or "")[:8]


class SessionRegistry:
    """
    Owns every SessionData record. Other components read records through
    get()/find() and mutate them only through the methods below.
    """

    def __init__(
            self,
            store: typing.Optional[SessionStore] = None,
            persistence: typing.Optional[SessionFilePersistence] = None,
            single_user: bool = False,
            clock: typing.Callable[[], float] = time.time,
    ):
        self.store = store if store is not None else InMemorySessionStore()
        self.persistence = persistence
        self.single_user = single_user
        self.clock = clock

    # --- CRUD ---

    def _new_session_id(self) -> str:
        if self.single_user:
            return DEFAULT_SESSION_ID
        session_id = secrets.token_urlsafe(24)
        while session_id in self.store:
            session_id = secrets.token_urlsafe(24)
        return session_id

    def create(self, redirect_after_login: typing.Optional[str] = None) -> SessionData:
        now = self.clock()
        session = SessionData(
            session_id=self._new_session_id(),
            created_at=now,
            last_used_at=now,
            redirect_after_login=redirect_after_login,
        )
        self.store.set(session)
        logger.info("Session %s created", short_id(session.session_id))
        return session

    def find(self, session_id: typing.Optional[str]) -> typing.Optional[SessionData]:
        if not session_id:
            return None
        return self.store.get(session_id)

    def get(self, session_id: typing.Optional[str]) -> SessionData:
        if not session_id:
            raise InvalidSession("Missing session_id.", status_code=400)
        session = self.store.get(session_id)
        if session is None:
            raise InvalidSession()
        return session

    def touch(self, session_id: str) -> SessionData:
        session = self.get(session_id)
        session = session.model_copy(update={"last_used_at": self.clock()})
        self.store.set(session)
        return session

    def update_tokens(
            self,
            session_id: str,
            access_token: str,
            expires_in: float,
            refresh_token: typing.Optional[str] = None,
    ) -> SessionData:
        """Replace the token fields of a session in one step."""
        session = self.get(session_id)
        now = self.clock()
        session = session.model_copy(update={
            "access_token": access_token,
            "token_expiry": now + max(0.0, float(expires_in)),
            # Keep the existing refresh token unless a new one was issued
            "refresh_token": refresh_token or session.refresh_token,
            "last_used_at": now,
        })
        self.store.set(session)
        return session

    def delete(self, session_id: str) -> bool:
        deleted = self.store.delete(session_id)
        if deleted:
            logger.info("Session %s deleted", short_id(session_id))
        return deleted

    def sweep(self, retention_seconds: float) -> typing.List[str]:
        cutoff = self.clock() - retention_seconds
        removed = [sid for sid in self.store.list_expired(cutoff) if self.store.delete(sid)]
        if removed:
            logger.info("Swept %d idle session(s)", len(removed))
        return removed

    def snapshot(self) -> typing.List[SessionData]:
        return [session for _, session in self.store.items()]

    def __len__(self) -> int:
        return len(self.store)

    # --- Persistence ---

    def persist(self) -> int:
        if self.persistence is None:
            return 0
        return self.persistence.save(self.snapshot())

    async def persist_async(self) -> int:
        """Copy the records on the event loop, write the file in a worker thread."""
        if self.persistence is None:
            return 0
        sessions = self.snapshot()
        return await asyncio.to_thread(self.persistence.save, sessions)

    async def checkpoint(self, reason: str) -> None:
        """persist_async() that logs failures; the periodic persistence task writes again later."""
        if self.persistence is None:
            return
        try:
            await self.persist_async()
        except (OSError, SessionPersistenceError) as e:
            logger.error("Could not persist sessions after %s: %s", reason, e)

    def restore(self) -> int:
        """Merge persisted sessions into the store. Records already in memory win."""
        if self.persistence is None:
            return 0
        restored = 0
        for session_id, session in self.persistence.load().items():
            if session_id in self.store:
                continue
            self.store.set(session)
            restored += 1
        logger.info("Restored %d session(s) from %s", restored, self.persistence.path)
        return restored
