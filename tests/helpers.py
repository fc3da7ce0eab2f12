"""Shared fixtures for the room tests: a controllable clock and a recording peer."""

import json
import sys
from pathlib import Path
from typing import Any, Dict, List

sys.path.insert(0, str(Path(__file__).parent.parent))

from database import MemoryMessageBackend
from message_store import MessageStore
from peers import Peer
from room import Room
from settings import RoomSettings

SECRET = "test-secret"
T0 = 1_700_000_000_000


class FakeClock:
    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class RecordingPeer(Peer):
    def __init__(self, ip: str = "10.0.0.1"):
        super().__init__(ip)
        self.sent: List[Dict[str, Any]] = []
        self.closed_with = None

    def send(self, payload: Dict[str, Any]) -> None:
        self.sent.append(payload)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await super().close(code, reason)
        self.closed_with = (code, reason)

    def of_type(self, kind: str) -> List[Dict[str, Any]]:
        return [p for p in self.sent if p["type"] == kind]

    def last(self) -> Dict[str, Any]:
        return self.sent[-1]


class BrokenPeer(RecordingPeer):
    def send(self, payload: Dict[str, Any]) -> None:
        raise ConnectionResetError("peer went away")


def make_room(clock: FakeClock, backend=None, **overrides) -> Room:
    overrides.setdefault("hmac_secret", SECRET)
    settings = RoomSettings(**overrides)
    store = MessageStore(backend or MemoryMessageBackend(), settings.retention_ms, settings.max_stored_messages)
    return Room(settings, store, clock=clock)


async def join(room: Room, peer: Peer, session_id=None) -> str:
    event = {"type": "join", "timestamp": room.clock()}
    if session_id is not None:
        event["sessionId"] = session_id
    await room.handle(peer, json.dumps(event))
    return peer.session_id


async def say(room: Room, peer: Peer, content: str, **extra) -> None:
    event = {"type": "message", "content": content, "sessionId": peer.session_id, "timestamp": room.clock()}
    event.update(extra)
    await room.handle(peer, json.dumps(event))


async def edit(room: Room, peer: Peer, message_id: str, new_content: str, **extra) -> None:
    event = {
        "type": "edit",
        "messageId": message_id,
        "newContent": new_content,
        "sessionId": peer.session_id,
        "timestamp": room.clock(),
    }
    event.update(extra)
    await room.handle(peer, json.dumps(event))
