"""
Message integrity stamps and identifier minting.

Signatures are HMAC-SHA256 over the compact JSON form of
``{"content", "sessionId", "timestamp"}`` (in that key order), hex encoded.
The secret stays on the server; a client-supplied signature is only ever
checked against the server's own derivation.
"""

import hashlib
import hmac
import json
import secrets
import string
from typing import Optional

_BASE36 = string.digits + string.ascii_lowercase


def canonical_payload(content: str, session_id: Optional[str], timestamp: Optional[int]) -> bytes:
    data = {"content": content, "sessionId": session_id, "timestamp": timestamp}
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sign(content: str, session_id: Optional[str], timestamp: Optional[int], secret: str) -> str:
    payload = canonical_payload(content, session_id, timestamp)
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify(signature: str, content: str, session_id: Optional[str], timestamp: Optional[int], secret: str) -> bool:
    expected = sign(content, session_id, timestamp, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def mint_session_id(now_ms: int) -> str:
    # 128 random bits; timestamp suffix only helps when reading logs
    return f"user_{secrets.token_hex(16)}_{to_base36(now_ms)}"


def mint_message_id(now_ms: int) -> str:
    return f"msg_{now_ms}_{secrets.token_hex(8)}"
