"""
Room coordinator for the single anonymous chat room.

The room owns every piece of shared state: the session registry, the typing
set, the per-IP connection counts and the message store. All inbound events
and the periodic cleanup run under one ``asyncio.Lock``, so each operation is
atomic with respect to the others. Outbound delivery never blocks the lock:
peers only enqueue, and persistence runs as a detached task.

Lifecycle of a connection::

    UNJOINED --join--> JOINED --disconnect/timeout--> CLOSED

A connection that joins again (or whose session id is claimed by a newer
connection) goes back to UNJOINED and may join again later.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

import policy
from database import open_backend
from errors import IntegrityError, PolicyViolation, ProtocolError, RoomError
from message_store import MessageStore
from peers import Peer, PeerState
from schemas import (
    ChatMessage,
    EditEvent,
    JoinEvent,
    MessageEvent,
    TypingEvent,
    error_event,
    message_edited_event,
    parse_event,
    system_event,
    typing_event,
    user_count_event,
)
from sessions import SessionEntry, SessionRegistry
from settings import RoomSettings
from signing import mint_message_id, mint_session_id, sign, verify

logger = logging.getLogger(__name__)

Event = Union[JoinEvent, MessageEvent, EditEvent, TypingEvent]


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RoomMetrics:
    total_connections: int = 0
    active_connections: int = 0
    total_messages: int = 0
    errors: int = 0

    def public_view(self, timestamp: int) -> Dict[str, Any]:
        # only aggregate, anonymous counters leave the process
        return {
            "timestamp": timestamp,
            "activeConnections": self.active_connections,
            "totalMessages": self.total_messages,
        }


class Room:
    def __init__(
        self,
        settings: RoomSettings,
        store: MessageStore,
        metrics: Optional[RoomMetrics] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.settings = settings
        self.store = store
        self.metrics = metrics or RoomMetrics()
        self.clock = clock
        self.registry = SessionRegistry()
        self.ip_connections: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    @property
    def participant_count(self) -> int:
        return len(self.registry)

    # -------------------- Admission --------------------

    def admit(self, ip: str, origin: Optional[str]) -> None:
        """Raise AdmissionError if a new connection from ``ip``/``origin`` must be refused."""
        policy.check_admission(ip, origin, self.ip_connections.get(ip, 0), self.settings)

    # -------------------- Inbound events --------------------

    async def handle(self, peer: Peer, raw: Union[str, bytes]) -> None:
        try:
            event = parse_event(raw)
        except ProtocolError as e:
            self.metrics.errors += 1
            logger.warning("Dropping malformed event from %r: %s", peer, e)
            if peer.session_id is not None:
                self._send(peer, error_event(e.content))
            return
        await self.dispatch(peer, event)

    async def dispatch(self, peer: Peer, event: Event) -> None:
        async with self._lock:
            try:
                if isinstance(event, JoinEvent):
                    self._join(peer, event)
                elif isinstance(event, MessageEvent):
                    self._message(peer, event)
                elif isinstance(event, EditEvent):
                    self._edit(peer, event)
                elif isinstance(event, TypingEvent):
                    self._typing(peer, event)
                else:
                    raise ProtocolError(f"Unknown event type: {type(event).__name__}")
            except ProtocolError as e:
                logger.warning("Protocol error from %r: %s", peer, e)
                if peer.session_id is not None:
                    self._send(peer, error_event(e.content))
            except RoomError as e:
                self._send(peer, error_event(e.content))
            except Exception:
                self.metrics.errors += 1
                logger.exception("Failed to process %s event from %r", event.type, peer)
                if peer.session_id is not None:
                    self._send(peer, error_event("An error occurred while processing your request."))

    def _join(self, peer: Peer, event: JoinEvent) -> None:
        now = self.clock()
        session_id = event.session_id or mint_session_id(now)

        if peer.session_id is not None:
            self._release(peer)

        displaced = self.registry.get(session_id)
        if displaced is not None:
            self._release(displaced.peer)
            self._send(displaced.peer, system_event("This session was opened on another connection."))
            logger.info("Session %s moved to a new connection", session_id)

        self.registry.upsert(SessionEntry(session_id=session_id, peer=peer, ip=peer.ip, joined_at=now))
        self.ip_connections[peer.ip] = self.ip_connections.get(peer.ip, 0) + 1
        peer.bind(session_id)

        self.metrics.total_connections += 1
        self.metrics.active_connections = len(self.registry)
        logger.info("Session %s joined (%d online)", session_id, len(self.registry))

        self._broadcast(user_count_event(len(self.registry)))
        self._send(peer, system_event(self.settings.welcome_message, session_id))
        for message in self.store.recent(self.settings.history_replay):
            self._send(peer, message.to_wire())

    def _message(self, peer: Peer, event: MessageEvent) -> None:
        s = self.settings
        entry = self._require_session(peer)
        if event.signature and not verify(
            event.signature, event.content, event.session_id, event.timestamp, s.hmac_secret
        ):
            logger.warning("Invalid message signature from session %s", entry.session_id)
            raise IntegrityError("Message integrity check failed.")
        self._check_declared_session(entry, event.session_id)

        content = policy.validated_content(event.content, s.max_message_length)
        policy.check_nickname(event.nickname, s.max_nickname_length)
        now = self.clock()
        policy.check_cooldown(entry.last_message_at, now, s.message_cooldown_ms)
        policy.check_rate(entry.recent, now, s.rate_window_ms, s.max_messages_per_minute)

        nickname = policy.sanitize(event.nickname) if event.nickname else None
        message = ChatMessage(
            message_id=mint_message_id(now),
            content=content,
            session_id=entry.session_id,
            timestamp=now,
            nickname=nickname or None,
            signature=sign(content, entry.session_id, now, s.hmac_secret),
        )
        self.store.append(message, now)
        entry.record_message(now, s.rate_window_ms)
        self.store.schedule_persist()
        self.metrics.total_messages += 1

        self._broadcast(message.to_wire())

    def _edit(self, peer: Peer, event: EditEvent) -> None:
        s = self.settings
        entry = self._require_session(peer)
        if event.signature and not verify(
            event.signature, event.new_content, event.session_id, event.timestamp, s.hmac_secret
        ):
            logger.warning("Invalid edit signature from session %s", entry.session_id)
            raise IntegrityError("Edit request integrity check failed.")
        self._check_declared_session(entry, event.session_id)

        original = self.store.find(event.message_id)
        if original is None:
            raise PolicyViolation("The message to edit could not be found.")
        if original.session_id != entry.session_id:
            logger.warning(
                "Session %s tried to edit message %s owned by %s",
                entry.session_id, original.message_id, original.session_id,
            )
        now = self.clock()
        policy.check_edit(original.session_id, entry.session_id, original.timestamp, now, s.edit_window_ms)
        content = policy.validated_content(event.new_content, s.max_message_length)

        edited = original.model_copy(update={
            "content": content,
            "edited_at": now,
            "signature": sign(content, original.session_id, original.timestamp, s.hmac_secret),
        })
        self.store.replace(edited)
        self.store.schedule_persist()

        self._broadcast(message_edited_event(edited))

    def _typing(self, peer: Peer, event: TypingEvent) -> None:
        session_id = peer.session_id
        if session_id is None or session_id not in self.registry:
            return
        if event.typing:
            self.registry.typing.add(session_id)
        else:
            self.registry.typing.discard(session_id)
        self._broadcast(typing_event(session_id, event.typing), exclude=session_id)

    # -------------------- Teardown --------------------

    async def disconnect(self, peer: Peer) -> None:
        """Forget ``peer``. Safe to call more than once."""
        async with self._lock:
            entry = self._release(peer)
            peer.state = PeerState.CLOSED
            if entry is None:
                return
            logger.info("Session %s left (%d online)", entry.session_id, len(self.registry))
            self._broadcast(user_count_event(len(self.registry)))

    async def cleanup(self) -> int:
        async with self._lock:
            now = self.clock()
            stale: List[SessionEntry] = [
                e for e in self.registry if e.idle_since(now, self.settings.session_timeout_ms)
            ]
            for entry in stale:
                self._release(entry.peer)
                logger.info("Session %s timed out", entry.session_id)
            if stale:
                self._broadcast(user_count_event(len(self.registry)))
            if self.store.prune(now):
                self.store.schedule_persist()

        # each close may wait up to send_timeout; never await them under the lock
        results = await asyncio.gather(
            *(entry.peer.close(1000, "Session timeout") for entry in stale),
            return_exceptions=True,
        )
        for entry, result in zip(stale, results):
            if isinstance(result, Exception):
                logger.warning("Closing timed out session %s failed: %s", entry.session_id, result)
        return len(stale)

    async def run_cleanup(self, interval: Optional[float] = None) -> None:
        interval = interval or self.settings.cleanup_interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self.cleanup()
            except Exception:
                self.metrics.errors += 1
                logger.exception("Periodic cleanup failed")

    # -------------------- Helpers --------------------

    def _require_session(self, peer: Peer) -> SessionEntry:
        entry = self.registry.get(peer.session_id) if peer.joined else None
        if entry is None or entry.peer is not peer:
            raise PolicyViolation("Session is not valid. Join the room first.")
        return entry

    def _check_declared_session(self, entry: SessionEntry, declared: Optional[str]) -> None:
        if declared != entry.session_id:
            logger.warning("Session id mismatch: %s declared on %s", declared, entry.session_id)
            raise PolicyViolation("Session ID does not match.")

    def _release(self, peer: Peer) -> Optional[SessionEntry]:
        session_id = peer.session_id
        peer.unbind()
        if session_id is None:
            return None
        entry = self.registry.remove(session_id, peer)
        if entry is None:
            return None
        count = self.ip_connections.get(entry.ip, 0)
        if count > 1:
            self.ip_connections[entry.ip] = count - 1
        else:
            self.ip_connections.pop(entry.ip, None)
        self.metrics.active_connections = len(self.registry)
        return entry

    def _send(self, peer: Peer, payload: Dict[str, Any]) -> None:
        try:
            peer.send(payload)
        except Exception as e:
            logger.warning("Send of %s to %r failed: %s", payload.get("type"), peer, e)

    def _broadcast(self, payload: Dict[str, Any], exclude: Optional[str] = None) -> None:
        for entry in self.registry.snapshot():
            if entry.session_id == exclude:
                continue
            try:
                entry.peer.send(payload)
            except Exception as e:
                logger.warning("Broadcast of %s to session %s failed: %s", payload.get("type"), entry.session_id, e)


def open_room(
    settings: RoomSettings,
    metrics: Optional[RoomMetrics] = None,
    clock: Callable[[], int] = now_ms,
) -> Room:
    """Build the room and load its history. Storage failures propagate as StorageUnavailable."""
    backend = open_backend(settings)
    store = MessageStore(backend, settings.retention_ms, settings.max_stored_messages)
    store.load(clock())
    return Room(settings, store, metrics=metrics, clock=clock)
