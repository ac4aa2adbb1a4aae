from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_PROJECT_ROOT = Path(__file__).resolve().parent.parent

load_dotenv(_PROJECT_ROOT / ".env")

MAX_ATTACHMENT_BYTES = 20 * 1024 * 1024


class Settings(BaseSettings):

    model_config = SettingsConfigDict(
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    app_name: str = "proposal-chat"
    mongodb_url: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URL")
    mongodb_db_name: str = Field(default="proposal_chat", alias="MONGODB_DB_NAME")
    # No REDIS_URL -> in-process bus, only usable with a single worker
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")

    jwt_secret: str = Field(default="change-me", alias="JWT_SECRET")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=60 * 24, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    typing_timeout_seconds: float = Field(default=3.0, alias="TYPING_TIMEOUT_SECONDS")
    typing_throttle_seconds: float = Field(default=1.0, alias="TYPING_THROTTLE_SECONDS")

    max_attachment_bytes: int = Field(default=MAX_ATTACHMENT_BYTES, alias="MAX_ATTACHMENT_BYTES")
    attachment_bucket: str = Field(default="chat", alias="ATTACHMENT_BUCKET")
    public_base_url: str = Field(default="http://localhost:8000", alias="PUBLIC_BASE_URL")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_file: Optional[str] = Field(default=None, alias="LOG_FILE")


def get_settings() -> Settings:
    return Settings()
