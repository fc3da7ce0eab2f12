"""
Connection handles held by the session registry.

A :class:`Peer` is what the room talks to: ``send`` never blocks (it only
enqueues), ``close`` is bounded by a timeout. :class:`WebSocketPeer` backs it
with a FastAPI ``WebSocket`` and a per-connection send task so a slow client
cannot hold up a broadcast.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class PeerState(str, Enum):
    UNJOINED = "unjoined"
    JOINED = "joined"
    CLOSED = "closed"


class Peer:
    def __init__(self, ip: str):
        self.ip = ip
        self.session_id: Optional[str] = None
        self.state = PeerState.UNJOINED

    @property
    def joined(self) -> bool:
        return self.state is PeerState.JOINED and self.session_id is not None

    def bind(self, session_id: str) -> None:
        self.session_id = session_id
        self.state = PeerState.JOINED

    def unbind(self) -> None:
        self.session_id = None
        if self.state is not PeerState.CLOSED:
            self.state = PeerState.UNJOINED

    def send(self, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.state = PeerState.CLOSED

    def __repr__(self) -> str:
        return f"<{type(self).__name__} ip={self.ip} session={self.session_id} state={self.state.value}>"


class WebSocketPeer(Peer):
    def __init__(self, websocket: WebSocket, ip: str, send_timeout: float = 5.0, outbox_size: int = 256):
        super().__init__(ip)
        self.websocket = websocket
        self.send_timeout = send_timeout
        self._outbox: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=outbox_size)
        self._pump = asyncio.create_task(self._drain())

    def send(self, payload: Dict[str, Any]) -> None:
        if self.state is PeerState.CLOSED:
            return
        try:
            self._outbox.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning("Outbox full for %r; dropping %s event", self, payload.get("type"))

    async def _drain(self) -> None:
        while True:
            payload = await self._outbox.get()
            try:
                await asyncio.wait_for(self.websocket.send_json(payload), timeout=self.send_timeout)
            except asyncio.TimeoutError:
                logger.warning("Send to %r timed out", self)
            except Exception as e:
                logger.warning("Send to %r failed: %s", self, e)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.state is PeerState.CLOSED:
            return
        await super().close(code, reason)
        try:
            await asyncio.wait_for(self.websocket.close(code=code, reason=reason), timeout=self.send_timeout)
        except Exception as e:
            logger.debug("Close of %r failed: %s", self, e)

    async def aclose(self) -> None:
        self.state = PeerState.CLOSED
        self._pump.cancel()
        try:
            await self._pump
        except asyncio.CancelledError:
            pass
