from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterator, List, Optional, Set

from peers import Peer


@dataclass
class SessionEntry:
    session_id: str
    peer: Peer
    ip: str
    joined_at: int
    message_count: int = 0
    last_message_at: int = 0
    recent: Deque[int] = field(default_factory=deque)

    def record_message(self, now: int, window_ms: int) -> None:
        self.message_count += 1
        self.last_message_at = now
        self.recent.append(now)
        while self.recent and now - self.recent[0] >= window_ms:
            self.recent.popleft()

    def idle_since(self, now: int, timeout_ms: int) -> bool:
        return now - self.last_message_at > timeout_ms and now - self.joined_at > timeout_ms


class SessionRegistry:
    """session id -> entry, plus the typing set. No policy lives here."""

    def __init__(self):
        self._entries: Dict[str, SessionEntry] = {}
        self.typing: Set[str] = set()

    def upsert(self, entry: SessionEntry) -> Optional[SessionEntry]:
        previous = self._entries.get(entry.session_id)
        self._entries[entry.session_id] = entry
        return previous

    def get(self, session_id: Optional[str]) -> Optional[SessionEntry]:
        if session_id is None:
            return None
        return self._entries.get(session_id)

    def remove(self, session_id: str, peer: Peer) -> Optional[SessionEntry]:
        entry = self._entries.get(session_id)
        if entry is None or entry.peer is not peer:
            return None
        del self._entries[session_id]
        self.typing.discard(session_id)
        return entry

    def snapshot(self) -> List[SessionEntry]:
        return list(self._entries.values())

    def __iter__(self) -> Iterator[SessionEntry]:
        return iter(self.snapshot())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._entries
