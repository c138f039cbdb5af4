# src/playback_bff/session_store.py

import typing
from abc import ABC, abstractmethod

from .session_data import SessionData


class SessionStore(ABC):
    """
    Key-value storage the session registry depends on.
    Implementations only store and return records; they apply no policy.
    """

    @abstractmethod
    def get(self, session_id: str) -> typing.Optional[SessionData]:
        ...

    @abstractmethod
    def set(self, session: SessionData) -> None:
        ...

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        ...

    @abstractmethod
    def list_expired(self, cutoff: float) -> typing.List[str]:
        """Ids of sessions whose last_used_at is strictly before `cutoff`."""

    @abstractmethod
    def items(self) -> typing.List[typing.Tuple[str, SessionData]]:
        """Point-in-time copy of all (session_id, record) pairs."""

    def __contains__(self, session_id: object) -> bool:
        return isinstance(session_id, str) and self.get(session_id) is not None

    def __len__(self) -> int:
        return len(self.items())


class InMemorySessionStore(SessionStore):
    def __init__(self):
        self._data: typing.Dict[str, SessionData] = {}

    def get(self, session_id: str) -> typing.Optional[SessionData]:
        return self._data.get(session_id)

    def set(self, session: SessionData) -> None:
        self._data[session.session_id] = session

    def delete(self, session_id: str) -> bool:
        return self._data.pop(session_id, None) is not None

    def list_expired(self, cutoff: float) -> typing.List[str]:
        return [sid for sid, s in list(self._data.items()) if s.last_used_at < cutoff]

    def items(self) -> typing.List[typing.Tuple[str, SessionData]]:
        return list(self._data.items())

    def __len__(self) -> int:
        return len(self._data)
