"""UDP 适配器。

Datagrams are either JSON objects ``{"topic": ..., "payload": ...}`` or binary
frames ``[u16 topic length][topic utf-8][payload bytes]``. Replies go to the
address a device last sent from, or to an explicit ``target``.
"""

from __future__ import annotations

import asyncio
import json
import struct
from collections import OrderedDict
from typing import Any, Dict, Optional, Tuple

from apps.policy.topics import parse_any
from apps.telemetry.metrics import record_adapter_message, record_dead_letter

from .base import Payload, ProtocolType, ServerAdapter, encode_payload

Address = Tuple[str, int]
_LENGTH = struct.Struct(">H")


def decode_datagram(data: bytes) -> Optional[Tuple[str, Payload, Dict[str, Any]]]:
    """Return ``(topic, payload, extra)`` or ``None`` for an unusable datagram."""

    if data[:1] == b"{":
        try:
            body = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        topic = body.get("topic") if isinstance(body, dict) else None
        if not isinstance(topic, str) or not topic:
            return None
        extra = {key: body[key] for key in ("qos", "retain") if key in body}
        return topic, body.get("payload", {}), extra
    if len(data) < _LENGTH.size:
        return None
    (length,) = _LENGTH.unpack_from(data)
    end = _LENGTH.size + length
    if length == 0 or len(data) < end:
        return None
    try:
        topic = data[_LENGTH.size:end].decode("utf-8")
    except UnicodeDecodeError:
        return None
    return topic, data[end:], {}


def encode_frame(topic: str, payload: Payload) -> bytes:
    encoded = topic.encode("utf-8")
    return _LENGTH.pack(len(encoded)) + encoded + encode_payload(payload)


def device_key(topic: str) -> str:
    """``iot/t/type/id`` prefix identifying the device behind a topic."""

    return "/".join(topic.split("/")[:4])


def parse_target(target: Any) -> Optional[Address]:
    if isinstance(target, tuple) and len(target) == 2:
        return str(target[0]), int(target[1])
    if isinstance(target, str) and ":" in target:
        host, _, port = target.rpartition(":")
        if host and port.isdigit():
            return host, int(port)
    return None


class _DatagramEndpoint(asyncio.DatagramProtocol):
    def __init__(self, adapter: "UDPAdapter") -> None:
        self._adapter = adapter

    def datagram_received(self, data: bytes, addr: Address) -> None:
        self._adapter._spawn(self._adapter.handle_datagram(data, addr))

    def error_received(self, exc: Exception) -> None:
        self._adapter._spawn(self._adapter._on_failure(exc))

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc is not None:
            self._adapter._spawn(self._adapter._mark_disconnected(str(exc)))


class UDPAdapter(ServerAdapter):
    protocol = ProtocolType.UDP

    def __init__(self, *, host: str = "0.0.0.0", port: int = 5684, max_peers: int = 4096, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._host = host
        self._port = port
        self._transport: Optional[asyncio.DatagramTransport] = None
        # 最近活跃的设备在末尾，超出上限时淘汰最早的
        self._peers: OrderedDict[str, Address] = OrderedDict()
        self._max_peers = max_peers

    @property
    def local_address(self) -> Optional[Address]:
        if self._transport is None:
            return None
        return self._transport.get_extra_info("sockname")[:2]

    async def _open(self) -> None:
        loop = asyncio.get_running_loop()
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: _DatagramEndpoint(self), local_addr=(self._host, self._port)
        )
        self._logger.info(f"UDP listening on {self._host}:{self._port}")

    async def _close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    async def handle_datagram(self, data: bytes, addr: Address) -> bool:
        decoded = decode_datagram(data)
        if decoded is None:
            record_dead_letter("malformed_datagram")
            self._logger.warning(f"UDP malformed datagram from {addr[0]}:{addr[1]}")
            return False
        topic, payload, extra = decoded
        if self.accepts(topic) and parse_any(topic) is not None:
            self._remember_peer(device_key(topic), addr)
        return await self.receive(topic, payload, source=f"{addr[0]}:{addr[1]}", **extra)

    def _remember_peer(self, key: str, addr: Address) -> None:
        self._peers.pop(key, None)
        self._peers[key] = addr
        while len(self._peers) > self._max_peers:
            self._peers.popitem(last=False)

    async def publish(self, topic: str, payload: Payload, **options: Any) -> bool:
        address = parse_target(options.get("target")) or self._peers.get(device_key(topic))
        if address is None:
            self._logger.warning(f"UDP publish without known peer: {topic}")
            return False
        if self._transport is None:
            return False
        self._transport.sendto(encode_frame(topic, payload), address)
        record_adapter_message(self.protocol.value, "out")
        return True


__all__ = ["UDPAdapter", "decode_datagram", "encode_frame"]
