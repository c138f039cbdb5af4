# src/playback_bff/persistence.py
"""
Snapshot storage for sessions so refresh tokens survive a restart.

The file maps session id -> {refresh_token, created_at, last_used_at,
redirect_after_login}. Writes are atomic (temp file + rename) so a crash
mid-write never corrupts the previous snapshot.
"""

import json
import logging
import os
import tempfile
import typing
from pathlib import Path

from pydantic import ValidationError

from .exceptions import SessionPersistenceError
from .session_data import PERSISTED_FIELDS, SessionData

logger = logging.getLogger(__name__)


class SessionFilePersistence:
    def __init__(self, path: typing.Union[str, Path]):
        self.path = Path(path)

    def save(self, sessions: typing.Iterable[SessionData]) -> int:
        data = {s.session_id: s.to_persisted() for s in sessions if s.refresh_token}

        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(tmp, self.path)
        except Exception:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

        logger.debug("Persisted %d session(s) to %s", len(data), self.path)
        return len(data)

    def load(self) -> typing.Dict[str, SessionData]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            raise SessionPersistenceError(f"Could not read session snapshot {self.path}: {e}") from e

        if not isinstance(raw, dict):
            raise SessionPersistenceError(f"Session snapshot {self.path} is not a JSON object")

        sessions: typing.Dict[str, SessionData] = {}
        for session_id, entry in raw.items():
            if not isinstance(entry, dict) or not entry.get("refresh_token"):
                logger.warning("Skipping persisted session %s without a refresh token", session_id[:8])
                continue
            try:
                fields = {k: v for k, v in entry.items() if k in PERSISTED_FIELDS}
                sessions[session_id] = SessionData(session_id=session_id, **fields)
            except ValidationError as e:
                raise SessionPersistenceError(f"Invalid entry for session {session_id[:8]}: {e}") from e
        return sessions
