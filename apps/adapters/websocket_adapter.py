"""WebSocket adapter using the ``websockets`` asyncio server.

Frames are JSON objects::

    {"action": "publish", "id": "1", "topic": "iot/...", "payload": {...}}
    {"action": "subscribe", "topic": "iot/.../cmd"}

Each frame is answered with ``{"type": "ack", "id": ..., "success": bool}``.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set
from urllib.parse import urlparse

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from apps.policy.patterns import matches_any
from apps.telemetry.metrics import record_adapter_message, record_dead_letter

from .base import Payload, ProtocolType, ServerAdapter


@dataclass
class WebSocketClient:
    connection: Any
    topics: Set[str] = field(default_factory=set)


def _jsonable(payload: Payload) -> Any:
    if isinstance(payload, bytes):
        try:
            return json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return {"raw": payload.hex()}
    return payload


class WebSocketAdapter(ServerAdapter):
    protocol = ProtocolType.WEBSOCKET

    def __init__(self, *, host: str = "0.0.0.0", port: int = 8765, path: str = "/ws", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._host = host
        self._port = port
        self._path = path
        self._server: Optional[Server] = None
        self._clients: Dict[str, WebSocketClient] = {}

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def _open(self) -> None:
        self._server = await serve(self._handle_client, self._host, self._port)
        self._logger.info(f"WebSocket listening on {self._host}:{self._port}{self._path}")

    async def _close(self) -> None:
        server = self._server
        self._server = None
        self._clients.clear()
        if server is not None:
            server.close()
            await server.wait_closed()

    async def _handle_client(self, connection: ServerConnection) -> None:
        path = urlparse(connection.request.path).path if connection.request else ""
        if self._path and path != self._path:
            await connection.close(code=1008, reason="unknown path")
            return
        client_id = self.register_client(connection)
        self._logger.info(f"WebSocket client connected: {client_id}")
        try:
            async for raw in connection:
                await self.handle_frame(client_id, raw)
        except ConnectionClosed:
            pass
        finally:
            self._clients.pop(client_id, None)
            self._logger.info(f"WebSocket client disconnected: {client_id}")

    def register_client(self, connection: Any) -> str:
        client_id = uuid.uuid4().hex
        self._clients[client_id] = WebSocketClient(connection=connection)
        return client_id

    async def handle_frame(self, client_id: str, raw: Any) -> Dict[str, Any]:
        client = self._clients.get(client_id)
        if client is None:
            return {"type": "ack", "success": False, "error": "unknown client"}
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError):
            frame = None
        if not isinstance(frame, dict):
            record_dead_letter("malformed_frame")
            ack = {"type": "ack", "success": False, "error": "invalid frame"}
            await self._send(client, ack)
            return ack

        action = frame.get("action", "publish")
        topic = frame.get("topic")
        ack: Dict[str, Any] = {"type": "ack", "id": frame.get("id"), "action": action, "success": False}
        if not isinstance(topic, str) or not topic:
            ack["error"] = "topic required"
        elif action == "publish":
            extra = {key: frame[key] for key in ("qos", "retain") if key in frame}
            ack["success"] = await self.receive(topic, frame.get("payload", {}), source=client_id, **extra)
        elif action == "subscribe":
            client.topics.add(topic)
            ack["success"] = True
        elif action == "unsubscribe":
            ack["success"] = topic in client.topics
            client.topics.discard(topic)
        else:
            ack["error"] = "unsupported action"
        await self._send(client, ack)
        return ack

    async def publish(self, topic: str, payload: Payload, **options: Any) -> bool:
        client_id = options.get("client_id")
        broadcast = bool(options.get("broadcast"))
        frame = json.dumps(
            {
                "type": "message",
                "topic": topic,
                "payload": _jsonable(payload),
                "ts": datetime.now(timezone.utc).isoformat(),
            },
            ensure_ascii=False,
        )
        delivered = 0
        for identifier, client in list(self._clients.items()):
            if client_id is not None and identifier != client_id:
                continue
            if not broadcast and client_id is None and not matches_any(client.topics, topic):
                continue
            if await self._send(client, frame):
                delivered += 1
        if delivered:
            record_adapter_message(self.protocol.value, "out")
        return delivered > 0

    async def _send(self, client: WebSocketClient, message: Any) -> bool:
        if not isinstance(message, str):
            message = json.dumps(message, ensure_ascii=False)
        try:
            await client.connection.send(message)
        except ConnectionClosed:
            return False
        return True


__all__ = ["WebSocketAdapter", "WebSocketClient"]
