import os
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.requests import HTTPConnection

from errors import AdmissionError
from peers import WebSocketPeer
from room import Room, RoomMetrics, now_ms, open_room
from settings import RoomSettings

logger = logging.getLogger(__name__)

router = APIRouter()


# -------------------- Utilities --------------------

def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or os.getenv("LOG_LEVEL", "INFO")).upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def client_ip(conn: HTTPConnection) -> str:
    # Proxy headers first, then the socket peer
    cf = conn.headers.get("cf-connecting-ip")
    if cf:
        return cf.strip()
    xff = conn.headers.get("x-forwarded-for")
    ip = (xff.split(",")[0].strip() if xff else None) or (conn.client.host if conn.client else None)
    return ip or "unknown"


def get_room(conn: HTTPConnection) -> Room:
    return conn.app.state.room


async def refuse(websocket: WebSocket, error: AdmissionError) -> None:
    if "websocket.http.response" in websocket.scope.get("extensions", {}):
        await websocket.send_denial_response(PlainTextResponse(error.detail, status_code=error.status_code))
    else:
        await websocket.close(code=1008, reason=error.detail)


# -------------------- HTTP Endpoints --------------------

@router.get("/health")
def health():
    return {"status": "healthy"}


@router.get("/metrics")
def metrics(request: Request):
    return JSONResponse(get_room(request).metrics.public_view(now_ms()))


@router.get("/ws")
def ws_without_upgrade():
    return PlainTextResponse("Expected Upgrade: websocket", status_code=426)


# -------------------- WebSocket Endpoint --------------------

@router.websocket("/ws")
async def ws_endpoint(websocket: WebSocket):
    room = get_room(websocket)
    ip = client_ip(websocket)
    try:
        room.admit(ip, websocket.headers.get("origin"))
    except AdmissionError as e:
        logger.warning("Refused connection from %s: %s", ip, e.detail)
        await refuse(websocket, e)
        return

    await websocket.accept()
    settings = room.settings
    peer = WebSocketPeer(websocket, ip, send_timeout=settings.send_timeout, outbox_size=settings.outbox_size)
    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                break
            raw = frame.get("text")
            if raw is None:
                raw = frame.get("bytes")
            if raw is None:
                continue
            await room.handle(peer, raw)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        room.metrics.errors += 1
        logger.exception("WebSocket error for %r: %s", peer, e)
        await peer.close(code=1011)
    finally:
        await room.disconnect(peer)
        await peer.aclose()


# -------------------- Application --------------------

def create_app(settings: Optional[RoomSettings] = None, room: Optional[Room] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.room is None:
            app.state.room = open_room(settings or RoomSettings.from_env(), RoomMetrics())
        current = app.state.room
        cleanup_task = asyncio.create_task(current.run_cleanup())
        logger.info("Room ready (cleanup every %ss)", current.settings.cleanup_interval)
        try:
            yield
        finally:
            cleanup_task.cancel()
            try:
                await cleanup_task
            except asyncio.CancelledError:
                pass
            await current.store.flush()

    app = FastAPI(title="Anonymous Chat Relay", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    app.include_router(router)
    app.state.room = room

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    configure_logging()
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
