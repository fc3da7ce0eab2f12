import os
import secrets
import logging
from typing import List, Optional, Set

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [p.strip() for p in raw.split(",") if p.strip()]


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


class RoomSettings(BaseModel):
    # Rate limits
    max_messages_per_minute: int = 30
    max_connections_per_ip: int = 5
    message_cooldown_ms: int = 1000

    # Content bounds
    max_message_length: int = 500
    max_nickname_length: int = 20

    # Windows (ms)
    edit_window_ms: int = 10 * 60 * 1000
    retention_ms: int = 12 * 60 * 60 * 1000
    session_timeout_ms: int = 5 * 60 * 1000
    rate_window_ms: int = 60 * 1000

    # History
    max_stored_messages: int = 500
    history_replay: int = 50

    # Security
    hmac_secret: str = Field(default_factory=lambda: secrets.token_hex(32))
    allowed_origins: List[str] = Field(default_factory=list)
    allow_localhost_origins: bool = True
    banned_ips: Set[str] = Field(default_factory=set)
    ip_allowlist: Optional[Set[str]] = None

    # Transport
    cleanup_interval: float = 300.0
    send_timeout: float = 5.0
    outbox_size: int = 256
    welcome_message: str = "You have joined the chat."

    # Storage
    database_url: Optional[str] = None
    database_name: str = "anonchat"
    storage_key: str = "messages"

    @classmethod
    def from_env(cls) -> "RoomSettings":
        values = {
            "database_url": os.getenv("DATABASE_URL") or None,
            "database_name": os.getenv("DATABASE_NAME", "anonchat"),
            "allowed_origins": _env_list("CHAT_ALLOWED_ORIGINS"),
            "banned_ips": set(_env_list("CHAT_BANNED_IPS")),
            "max_connections_per_ip": _env_int("CHAT_MAX_CONNECTIONS_PER_IP", 5),
            "max_messages_per_minute": _env_int("CHAT_MAX_MESSAGES_PER_MINUTE", 30),
            "message_cooldown_ms": _env_int("CHAT_MESSAGE_COOLDOWN_MS", 1000),
            "cleanup_interval": float(os.getenv("CHAT_CLEANUP_INTERVAL", "300")),
        }
        allowlist = _env_list("CHAT_IP_ALLOWLIST")
        if allowlist:
            values["ip_allowlist"] = set(allowlist)
        secret = os.getenv("CHAT_HMAC_SECRET")
        if secret:
            values["hmac_secret"] = secret
        else:
            logger.warning("CHAT_HMAC_SECRET not set; using a random per-process secret")
        return cls(**values)
