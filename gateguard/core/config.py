from datetime import timedelta, timezone
from functools import lru_cache
from pathlib import Path
from typing import List
from urllib.parse import urlparse
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_FILE = Path(__file__).resolve().parents[2] / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=str(ENV_FILE), case_sensitive=False)

    APP_NAME: str = "GateGuard Backend"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    API_V1_PREFIX: str = "/api/v1"
    BACKEND_HOST: str = "0.0.0.0"
    BACKEND_PORT: int = 8000

    DATABASE_URL: str = "sqlite:///./gateguard.db"

    # Tokens are issued by the auth service; this backend only verifies them.
    JWT_SECRET_KEY: str = "change-me"
    JWT_ALGORITHM: str = "HS256"

    CORS_ORIGINS: str = "http://localhost:5173,http://127.0.0.1:5173"

    SOCKET_PATH: str = "/socket.io"
    NOTIFICATION_NAMESPACE: str = "/realtime/notifications"

    # "socket" emits to connected apps, "firebase" sends FCM pushes.
    PUSH_BACKEND: str = "socket"
    FIREBASE_PROJECT_ID: str = ""
    FIREBASE_CREDENTIALS_JSON: str = ""

    # Gate times are evaluated in a fixed regional offset (IST, UTC+5:30), never the server locale.
    LOCAL_UTC_OFFSET_MINUTES: int = 330
    GATE_PASS_APPROVAL_MINUTES: int = 20
    CHECKIN_CODE_MIN: int = 100000
    CHECKIN_CODE_MAX: int = 999999

    @property
    def cors_origins(self) -> List[str]:
        origins: list[str] = []
        for raw in self.CORS_ORIGINS.split(","):
            value = raw.strip()
            if not value:
                continue
            parsed = urlparse(value)
            if parsed.scheme and parsed.netloc:
                value = f"{parsed.scheme}://{parsed.netloc}"
            origins.append(value.rstrip("/"))
        return origins

    @property
    def local_timezone(self) -> timezone:
        return timezone(timedelta(minutes=self.LOCAL_UTC_OFFSET_MINUTES))

    @property
    def gate_pass_approval_window(self) -> timedelta:
        return timedelta(minutes=self.GATE_PASS_APPROVAL_MINUTES)


@lru_cache
def get_settings() -> Settings:
    return Settings()
