"""
Stateless policy checks consulted by the room on every inbound event.

Each check raises :class:`errors.PolicyViolation` (or
:class:`errors.AdmissionError` for connection admission) and returns nothing
on success, except :func:`validated_content` which hands back the sanitized
text.
"""

import re
from typing import Iterable, Optional
from urllib.parse import urlsplit

from errors import AdmissionError, PolicyViolation
from settings import RoomSettings

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_LOCAL_HOSTS = {"localhost", "127.0.0.1"}


def sanitize(content: str) -> str:
    return _CONTROL_CHARS.sub("", content).strip()


def check_content(content: Optional[str], max_length: int) -> None:
    if not content or not content.strip():
        raise PolicyViolation("Message content is empty.")
    if len(content) > max_length:
        raise PolicyViolation(f"Messages are limited to {max_length} characters.")


def validated_content(content: Optional[str], max_length: int) -> str:
    check_content(content, max_length)
    cleaned = sanitize(content)
    if not cleaned:
        raise PolicyViolation("Message content is empty.")
    return cleaned


def check_nickname(nickname: Optional[str], max_length: int) -> None:
    if nickname is not None and len(nickname) > max_length:
        raise PolicyViolation(f"Nicknames are limited to {max_length} characters.")


def check_cooldown(last_message_at: int, now: int, cooldown_ms: int) -> None:
    if now - last_message_at < cooldown_ms:
        raise PolicyViolation("You are sending messages too quickly. Please wait a moment.")


def check_rate(recent: Iterable[int], now: int, window_ms: int, cap: int) -> None:
    # sliding window: at most `cap` messages in any trailing `window_ms`
    in_window = sum(1 for t in recent if now - t < window_ms)
    if in_window >= cap:
        raise PolicyViolation("Per-minute message limit exceeded.")


def check_edit(owner_id: str, requester_id: str, created_at: int, now: int, window_ms: int) -> None:
    if owner_id != requester_id:
        raise PolicyViolation("You can only edit your own messages.")
    if now - created_at > window_ms:
        minutes = window_ms // 60000
        raise PolicyViolation(f"Messages can only be edited within {minutes} minutes of sending.")


def origin_allowed(origin: str, settings: RoomSettings) -> bool:
    try:
        parts = urlsplit(origin)
    except ValueError:
        return False
    if not parts.scheme or not parts.hostname:
        return False
    if settings.allow_localhost_origins and parts.hostname in _LOCAL_HOSTS:
        return True
    normalized = f"{parts.scheme}://{parts.netloc}".lower()
    return any(normalized == allowed.rstrip("/").lower() for allowed in settings.allowed_origins)


def check_admission(ip: str, origin: Optional[str], live_connections: int, settings: RoomSettings) -> None:
    if origin and settings.allowed_origins and not origin_allowed(origin, settings):
        raise AdmissionError(403, "Unauthorized Origin")
    if ip in settings.banned_ips:
        raise AdmissionError(403, "Access Denied")
    if settings.ip_allowlist is not None and ip not in settings.ip_allowlist:
        raise AdmissionError(403, "Access Denied")
    if live_connections >= settings.max_connections_per_ip:
        raise AdmissionError(429, "Too many connections from this IP")
