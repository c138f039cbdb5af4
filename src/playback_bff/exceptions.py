# src/playback_bff/exceptions.py

from typing import Optional

from fastapi import status


class AuthFailure(Exception):
    """Base class for every failure surfaced to a client as a structured error."""

    status_code: int = status.HTTP_401_UNAUTHORIZED

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class InvalidSession(AuthFailure):
    """Missing or unknown session id. Never retried."""

    def __init__(self, message: str = "Invalid or expired session. Please log in again.",
                 status_code: Optional[int] = None):
        super().__init__(message, status_code)


class ExchangeRejected(AuthFailure):
    """The authorization code was refused; the login attempt has to start over."""

    status_code = status.HTTP_400_BAD_REQUEST


class RefreshDenied(AuthFailure):
    """
    A refresh token could not be exchanged for a new access token.
    `retryable` marks failures worth another attempt (network errors, 5xx, 429).
    """

    def __init__(self, message: str, retryable: bool = False, status_code: Optional[int] = None):
        super().__init__(message, status_code)
        self.retryable = retryable


class UpstreamRejected(AuthFailure):
    """Non-success answer from the playback API. Does not affect the session."""

    status_code = status.HTTP_502_BAD_GATEWAY


class SessionPersistenceError(Exception):
    pass
