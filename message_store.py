import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol, Set

from pydantic import ValidationError

from schemas import ChatMessage

logger = logging.getLogger(__name__)


class MessageBackend(Protocol):
    def load(self) -> List[Dict[str, Any]]: ...

    def save(self, messages: List[Dict[str, Any]]) -> None: ...


class MessageStore:
    """Ordered, bounded message log. Memory is authoritative; the backend is best-effort."""

    def __init__(self, backend: MessageBackend, retention_ms: int, max_messages: int):
        self.backend = backend
        self.retention_ms = retention_ms
        self.max_messages = max_messages
        self._messages: List[ChatMessage] = []
        self._pending: Set[asyncio.Task] = set()
        self._write_lock = asyncio.Lock()
        self._generation = 0
        self._saved_generation = 0

    def load(self, now: int) -> None:
        stored = self.backend.load()
        messages = []
        for doc in stored:
            try:
                messages.append(ChatMessage.model_validate(doc))
            except ValidationError as e:
                logger.warning("Skipping unreadable stored message: %s", e)
        self._messages = messages
        if self.prune(now) or len(messages) != len(stored):
            self.backend.save(self.snapshot())
        logger.info("Loaded %d stored messages", len(self._messages))

    # -------------------- Reads --------------------

    def find(self, message_id: str) -> Optional[ChatMessage]:
        for message in self._messages:
            if message.message_id == message_id:
                return message
        return None

    def recent(self, limit: int) -> List[ChatMessage]:
        if limit <= 0:
            return []
        return list(self._messages[-limit:])

    def snapshot(self) -> List[Dict[str, Any]]:
        return [m.model_dump(by_alias=True) for m in self._messages]

    def __len__(self) -> int:
        return len(self._messages)

    # -------------------- Mutations --------------------

    def append(self, message: ChatMessage, now: int) -> None:
        self._messages.append(message)
        self.prune(now)

    def replace(self, message: ChatMessage) -> bool:
        for i, existing in enumerate(self._messages):
            if existing.message_id == message.message_id:
                self._messages[i] = message
                return True
        return False

    def prune(self, now: int) -> bool:
        cutoff = now - self.retention_ms
        before = len(self._messages)
        kept = [m for m in self._messages if m.timestamp > cutoff]
        if len(kept) > self.max_messages:
            kept = kept[-self.max_messages:]
        self._messages = kept
        return len(kept) != before

    # -------------------- Persistence --------------------

    def schedule_persist(self) -> asyncio.Task:
        self._generation += 1
        task = asyncio.get_running_loop().create_task(self._write())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _write(self) -> None:
        # one writer at a time, always saving the newest state
        async with self._write_lock:
            generation = self._generation
            if generation <= self._saved_generation:
                return
            snapshot = self.snapshot()
            try:
                await asyncio.to_thread(self.backend.save, snapshot)
            except Exception as e:
                logger.error("Persisting %d messages failed: %s", len(snapshot), e)
                return
            self._saved_generation = generation

    async def flush(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending))
