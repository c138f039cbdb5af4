# src/playback_bff/config.py

import logging
from pathlib import Path
from typing import Any, List, Optional, Union

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# .env is at the project root, two levels up from src/playback_bff/
CONFIG_FILE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT_DIR = CONFIG_FILE_DIR.parent.parent
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"

DEFAULT_SCOPES = [
    "user-read-playback-state",
    "user-modify-playback-state",
    "user-read-currently-playing",
]

if ENV_FILE_PATH.exists():
    load_dotenv(dotenv_path=ENV_FILE_PATH, override=True)
    logger.info("PlaybackBFF: loaded .env file from: %s", ENV_FILE_PATH)
else:
    logger.info("PlaybackBFF: .env file not found at %s. Relying on environment variables.", ENV_FILE_PATH)


class Settings(BaseSettings):
    # === Spotify application details ===
    SPOTIFY_CLIENT_ID: str
    SPOTIFY_CLIENT_SECRET: str
    SPOTIFY_REDIRECT_URI: AnyHttpUrl
    # Comma-separated in the environment, converted to List[str] by the validator below
    SPOTIFY_SCOPES: Union[str, List[str]] = DEFAULT_SCOPES

    SPOTIFY_ACCOUNTS_BASE_URL: str = "https://accounts.spotify.com"
    SPOTIFY_API_BASE_URL: str = "https://api.spotify.com/v1"
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # === Server ===
    HOST: str = "0.0.0.0"
    PORT: int = 8888
    LOG_LEVEL: str = "INFO"

    # === Token lifecycle ===
    TOKEN_REFRESH_MARGIN_SECONDS: int = 60
    REFRESH_MAX_ATTEMPTS: int = 3
    REFRESH_RETRY_DELAY_SECONDS: float = 1.0

    # === Session management ===
    SESSION_RETENTION_SECONDS: int = 60 * 60 * 24
    SESSION_SWEEP_INTERVAL_SECONDS: int = 60 * 60
    SESSION_STORE_PATH: Optional[Path] = None
    SESSION_PERSIST_INTERVAL_SECONDS: int = 60 * 5
    SINGLE_USER_MODE: bool = False

    @property
    def SPOTIFY_AUTHORIZE_URL(self) -> str:
        return f"{self.SPOTIFY_ACCOUNTS_BASE_URL.rstrip('/')}/authorize"

    @property
    def SPOTIFY_TOKEN_URL(self) -> str:
        return f"{self.SPOTIFY_ACCOUNTS_BASE_URL.rstrip('/')}/api/token"

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False
    )

    @field_validator("SPOTIFY_SCOPES", mode='before')
    @classmethod
    def parse_comma_separated_scopes(cls, v: Any) -> List[str]:
        if isinstance(v, str):
            if not v.strip():
                return []
            return [scope.strip() for scope in v.split(',') if scope.strip()]
        if isinstance(v, list):
            return v
        raise TypeError('SPOTIFY_SCOPES: Expected a comma-separated string or a list.')

    @model_validator(mode='after')
    def check_limits(self) -> 'Settings':
        if not isinstance(self.SPOTIFY_SCOPES, list):
            raise ValueError(f"SPOTIFY_SCOPES ended up as {type(self.SPOTIFY_SCOPES)}, expected list.")
        if self.REFRESH_MAX_ATTEMPTS < 1:
            raise ValueError("REFRESH_MAX_ATTEMPTS must be at least 1.")
        if self.TOKEN_REFRESH_MARGIN_SECONDS < 0 or self.REFRESH_RETRY_DELAY_SECONDS < 0:
            raise ValueError("Refresh margin and retry delay must not be negative.")
        if self.SESSION_RETENTION_SECONDS <= 0:
            raise ValueError("SESSION_RETENTION_SECONDS must be positive.")
        return self


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or "INFO").upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


try:
    settings = Settings()
except Exception as e:
    logger.error("PlaybackBFF: Error instantiating Settings: %s", e)
    raise
