#!/usr/bin/env python3
"""
HTTP and WebSocket glue: admission responses, the side-channel endpoints and
one end-to-end chat exchange through FastAPI's TestClient.
"""

import unittest

from helpers import SECRET
from fastapi.testclient import TestClient
from starlette.requests import Request
from starlette.testclient import WebSocketDenialResponse

from database import MemoryMessageBackend
from main import client_ip, create_app
from message_store import MessageStore
from room import Room
from settings import RoomSettings


def build_app(**overrides):
    overrides.setdefault("hmac_secret", SECRET)
    settings = RoomSettings(**overrides)
    store = MessageStore(MemoryMessageBackend(), settings.retention_ms, settings.max_stored_messages)
    room = Room(settings, store)
    return create_app(settings, room=room), room


def join(ws, session_id):
    ws.send_json({"type": "join", "sessionId": session_id})
    count = ws.receive_json()
    welcome = ws.receive_json()
    return count, welcome


class TestSideChannel(unittest.TestCase):
    def setUp(self):
        self.app, self.room = build_app()

    def test_health(self):
        with TestClient(self.app) as client:
            response = client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "healthy"})

    def test_metrics_shape(self):
        with TestClient(self.app) as client:
            body = client.get("/metrics").json()
        self.assertEqual(set(body), {"timestamp", "activeConnections", "totalMessages"})
        self.assertEqual(body["activeConnections"], 0)

    def test_plain_get_on_ws_requires_upgrade(self):
        with TestClient(self.app) as client:
            response = client.get("/ws")
        self.assertEqual(response.status_code, 426)
        self.assertEqual(response.text, "Expected Upgrade: websocket")


class TestWebSocket(unittest.TestCase):
    def test_join_and_message_round_trip(self):
        app, room = build_app()
        with TestClient(app) as client:
            with client.websocket_connect("/ws") as u1, client.websocket_connect("/ws") as u2:
                count, welcome = join(u1, "u1")
                self.assertEqual(count, {"type": "user_count", "count": 1})
                self.assertEqual(welcome["type"], "system")
                self.assertEqual(welcome["sessionId"], "u1")

                join(u2, "u2")
                self.assertEqual(u1.receive_json(), {"type": "user_count", "count": 2})

                u1.send_json({"type": "message", "sessionId": "u1", "content": "hello", "timestamp": 1})
                echoed = u1.receive_json()
                received = u2.receive_json()
                self.assertEqual(echoed, received)
                self.assertEqual(received["content"], "hello")
                self.assertEqual(received["sessionId"], "u1")

                metrics = client.get("/metrics").json()
                self.assertEqual(metrics["activeConnections"], 2)
                self.assertEqual(metrics["totalMessages"], 1)

            self.assertEqual(client.get("/metrics").json()["activeConnections"], 0)
        self.assertEqual(room.ip_connections, {})

    def test_errors_keep_connection_open(self):
        app, _ = build_app()
        with TestClient(app) as client:
            with client.websocket_connect("/ws") as ws:
                ws.send_json({"type": "message", "content": "too early"})
                self.assertEqual(ws.receive_json()["type"], "error")

                join(ws, "u1")
                ws.send_text("not json")
                self.assertEqual(ws.receive_json()["type"], "error")

                ws.send_json({"type": "message", "sessionId": "u1", "content": "fine"})
                self.assertEqual(ws.receive_json()["content"], "fine")

    def test_unauthorized_origin_is_refused(self):
        app, room = build_app(allowed_origins=["https://chat.example.com"])
        with TestClient(app) as client:
            with self.assertRaises(WebSocketDenialResponse) as ctx:
                with client.websocket_connect("/ws", headers={"origin": "https://evil.example.com"}):
                    pass
            self.assertEqual(ctx.exception.status_code, 403)
            self.assertEqual(ctx.exception.text, "Unauthorized Origin")

            with client.websocket_connect("/ws", headers={"origin": "https://chat.example.com"}) as ws:
                count, _ = join(ws, "u1")
                self.assertEqual(count["count"], 1)

    def test_per_ip_cap(self):
        app, _ = build_app(max_connections_per_ip=1)
        with TestClient(app) as client:
            with client.websocket_connect("/ws") as ws:
                join(ws, "u1")
                with self.assertRaises(WebSocketDenialResponse) as ctx:
                    with client.websocket_connect("/ws"):
                        pass
                self.assertEqual(ctx.exception.status_code, 429)

    def test_banned_ip_from_proxy_header(self):
        app, _ = build_app(banned_ips={"203.0.113.5"})
        with TestClient(app) as client:
            with self.assertRaises(WebSocketDenialResponse) as ctx:
                with client.websocket_connect("/ws", headers={"cf-connecting-ip": "203.0.113.5"}):
                    pass
            self.assertEqual(ctx.exception.status_code, 403)


class TestClientIp(unittest.TestCase):
    def request(self, headers, client=("192.0.2.1", 5000)):
        scope = {
            "type": "http",
            "headers": [(k.encode(), v.encode()) for k, v in headers.items()],
            "client": client,
        }
        return Request(scope)

    def test_precedence(self):
        self.assertEqual(client_ip(self.request({"cf-connecting-ip": "1.1.1.1", "x-forwarded-for": "2.2.2.2"})), "1.1.1.1")
        self.assertEqual(client_ip(self.request({"x-forwarded-for": "2.2.2.2, 10.0.0.1"})), "2.2.2.2")
        self.assertEqual(client_ip(self.request({})), "192.0.2.1")
        self.assertEqual(client_ip(self.request({}, client=None)), "unknown")


class TestLifespan(unittest.TestCase):
    def test_startup_opens_room_from_settings(self):
        app = create_app(RoomSettings(hmac_secret=SECRET))
        with TestClient(app) as client:
            self.assertIsInstance(app.state.room, Room)
            self.assertEqual(client.get("/metrics").json()["totalMessages"], 0)

    def test_shutdown_flushes_history(self):
        app, room = build_app()
        with TestClient(app) as client:
            with client.websocket_connect("/ws") as ws:
                join(ws, "u1")
                ws.send_json({"type": "message", "sessionId": "u1", "content": "kept"})
                self.assertEqual(ws.receive_json()["content"], "kept")
        self.assertEqual([m["content"] for m in room.store.backend.messages], ["kept"])


if __name__ == "__main__":
    unittest.main()
