"""
Runtime configuration for the UOI membership bot.

Values come from the environment (a local .env file is loaded first).
Keep secrets out of this file.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _get_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _get_str(name: str, default: Optional[str]) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


@dataclass(frozen=True)
class Settings:
    discord_token: Optional[str] = None
    command_prefix: str = "!"
    admin_role_id: Optional[int] = None
    log_channel_id: Optional[int] = None
    audit_webhook_url: Optional[str] = None

    store_backend: str = "sqlite"
    database_url: Optional[str] = None
    sqlite_path: str = os.path.join("data", "uoi", "members.db")
    json_store_path: str = os.path.join("data", "uoi", "members.json")

    id_generation_attempts: int = 10
    avatar_timeout_seconds: float = 5.0
    internal_id_prefix: str = "UOI"
    card_title: str = "UNION OF INDIANS"
    card_subtitle: str = "OFFICIAL IDENTIFICATION CARD"

    log_level: str = "INFO"
    auto_load_extensions: bool = True
    extensions_dir: str = "Extensions"

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv()

        attempts = _get_int("ID_GENERATION_ATTEMPTS", cls.id_generation_attempts)
        if attempts < 1:
            raise ValueError("ID_GENERATION_ATTEMPTS must be at least 1")

        return cls(
            discord_token=_get_str("DISCORD_TOKEN", None),
            command_prefix=_get_str("COMMAND_PREFIX", cls.command_prefix),
            admin_role_id=_get_int("ADMIN_ROLE_ID", None),
            log_channel_id=_get_int("LOG_CHANNEL_ID", None),
            audit_webhook_url=_get_str("AUDIT_WEBHOOK_URL", None),
            store_backend=_get_str("STORE_BACKEND", cls.store_backend).lower(),
            database_url=_get_str("DATABASE_URL", None),
            sqlite_path=_get_str("SQLITE_PATH", cls.sqlite_path),
            json_store_path=_get_str("JSON_STORE_PATH", cls.json_store_path),
            id_generation_attempts=attempts,
            avatar_timeout_seconds=_get_float("AVATAR_TIMEOUT_SECONDS", cls.avatar_timeout_seconds),
            internal_id_prefix=_get_str("INTERNAL_ID_PREFIX", cls.internal_id_prefix),
            card_title=_get_str("CARD_TITLE", cls.card_title),
            card_subtitle=_get_str("CARD_SUBTITLE", cls.card_subtitle),
            log_level=_get_str("LOG_LEVEL", cls.log_level).upper(),
            auto_load_extensions=os.getenv("AutoExtension", "On").lower() == "on",
            extensions_dir=_get_str("EXTENSIONS_DIR", cls.extensions_dir),
        )
