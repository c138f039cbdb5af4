# src/playback_bff/session_data.py

from typing import Any, Dict, Optional

from pydantic import BaseModel

# Access tokens are recoverable by refresh and never written to disk
PERSISTED_FIELDS = ("refresh_token", "created_at", "last_used_at", "redirect_after_login")


class SessionData(BaseModel):
    """
    Represents the data stored server-side for one authorized browser user.
    Only the session id travels to the browser (in the OAuth state and the
    callback redirect fragment); tokens stay here.
    """
    session_id: str
    created_at: float
    last_used_at: float
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expiry: Optional[float] = None  # Epoch seconds
    redirect_after_login: Optional[str] = None

    def token_valid(self, now: float, margin: float = 0) -> bool:
        return (
            self.access_token is not None
            and self.token_expiry is not None
            and self.token_expiry - margin > now
        )

    def expires_in(self, now: float) -> int:
        if self.access_token is None or self.token_expiry is None:
            return 0
        return max(0, int(self.token_expiry - now))

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)

    @property
    def is_pending(self) -> bool:
        """True between /login and a successful /callback."""
        return self.access_token is None and self.refresh_token is None

    def to_persisted(self) -> Dict[str, Any]:
        return self.model_dump(include=set(PERSISTED_FIELDS))
