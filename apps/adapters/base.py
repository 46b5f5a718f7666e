"""协议适配器契约：状态机、事件与重连。

Every transport turns its input into a :class:`ProtocolMessage` and emits it
as a ``message`` event. ``connected``/``disconnected``/``error`` report the
transport's health; ``error`` is a signal, not a state.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from abc import ABC, abstractmethod
from collections import deque
from contextlib import suppress
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine, Deque, Dict, Iterable, List, Optional, Set, Union

from apps.policy.patterns import matches_any
from apps.telemetry.logging import get_logger
from apps.telemetry.metrics import (
    mark_reconnect,
    record_adapter_message,
    record_dead_letter,
    set_adapter_connected,
)

from .retry import RetryPolicy

Payload = Union[bytes, str, Dict[str, Any], List[Any]]
Listener = Callable[..., Union[Awaitable[None], None]]

EVENTS = ("message", "connected", "disconnected", "error")


class ProtocolType(str, Enum):
    MQTT = "mqtt"
    HTTP = "http"
    WEBSOCKET = "websocket"
    UDP = "udp"
    COAP = "coap"


class AdapterState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def encode_payload(payload: Payload) -> bytes:
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


@dataclass
class AdapterStatus:
    state: AdapterState = AdapterState.UNINITIALIZED
    last_connected: Optional[datetime] = None
    reconnect_attempts: int = 0
    error: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self.state is AdapterState.CONNECTED

    def as_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "connected": self.connected,
            "last_connected": self.last_connected.isoformat() if self.last_connected else None,
            "reconnect_attempts": self.reconnect_attempts,
            "error": self.error,
        }


@dataclass(frozen=True)
class ProtocolMessage:
    """Transport-neutral message; owned by the receiver once emitted."""

    protocol: ProtocolType
    payload: Payload
    topic: Optional[str] = None
    qos: Optional[int] = None
    retain: Optional[bool] = None
    timestamp: datetime = field(default_factory=_utcnow)
    source: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


class ProtocolAdapter(ABC):
    """Base class shared by the five transports."""

    protocol: ProtocolType

    def __init__(
        self,
        *,
        enabled: bool = True,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.enabled = enabled
        self._policy = retry_policy or RetryPolicy()
        self._status = AdapterStatus()
        self._listeners: Dict[str, List[Listener]] = {event: [] for event in EVENTS}
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._tasks: Set[asyncio.Task[Any]] = set()
        self._logger = get_logger("protocol_adapter", protocol=self.protocol.value)

    # -- transport hooks ------------------------------------------------------

    @abstractmethod
    async def _open(self) -> None:
        """Bind/connect the transport. Raise on failure."""

    @abstractmethod
    async def _close(self) -> None:
        """Release sockets and servers."""

    @abstractmethod
    async def publish(self, topic: str, payload: Payload, **options: Any) -> bool:
        """Send a message towards a device."""

    @abstractmethod
    async def subscribe(self, topic: str, **options: Any) -> bool:
        """Start receiving messages on ``topic``."""

    @abstractmethod
    async def unsubscribe(self, topic: str) -> bool:
        """Stop receiving messages on ``topic``."""

    # -- events ---------------------------------------------------------------

    def on(self, event: str, listener: Listener) -> None:
        if event not in self._listeners:
            raise ValueError(f"unknown adapter event: {event}")
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Listener) -> None:
        with suppress(KeyError, ValueError):
            self._listeners[event].remove(listener)

    async def _emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners[event]):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self._logger.exception(f"{event} listener failed")

    # -- lifecycle ------------------------------------------------------------

    @property
    def status(self) -> AdapterStatus:
        return replace(self._status)

    @property
    def state(self) -> AdapterState:
        return self._status.state

    async def initialize(self) -> None:
        """Open the transport; failures leave the adapter retrying in the background."""

        if not self.enabled:
            raise ValueError(f"{self.protocol.value} adapter is disabled")
        if self._status.state not in (AdapterState.UNINITIALIZED, AdapterState.CLOSED):
            return
        self._status.state = AdapterState.INITIALIZING
        try:
            await self._open()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._on_failure(exc)
            await self._mark_disconnected()
            return
        await self._mark_connected()

    async def shutdown(self) -> None:
        """Stop the reconnect loop, let in-flight handlers finish, then release the transport."""

        if self._status.state in (AdapterState.CLOSED, AdapterState.SHUTTING_DOWN):
            return
        was_connected = self._status.connected
        self._status.state = AdapterState.SHUTTING_DOWN
        await self._cancel_reconnect()
        try:
            await self._drain_tasks()
            await self._close()
            await self._drain_tasks()
        finally:
            self._status.state = AdapterState.CLOSED
            set_adapter_connected(self.protocol.value, False)
            if was_connected:
                await self._emit("disconnected", "shutdown")
            self._logger.info("adapter closed")

    async def _mark_connected(self) -> None:
        if self._status.state in (AdapterState.CONNECTED, AdapterState.SHUTTING_DOWN, AdapterState.CLOSED):
            return
        self._status.state = AdapterState.CONNECTED
        self._status.last_connected = _utcnow()
        self._status.reconnect_attempts = 0
        self._status.error = None
        set_adapter_connected(self.protocol.value, True)
        self._logger.info("adapter connected")
        await self._emit("connected")

    async def _mark_disconnected(self, reason: str = "connection_lost") -> None:
        if self._status.state in (AdapterState.SHUTTING_DOWN, AdapterState.CLOSED):
            return
        was_connected = self._status.connected
        self._status.state = AdapterState.DISCONNECTED
        set_adapter_connected(self.protocol.value, False)
        if was_connected:
            self._logger.warning(f"adapter disconnected: {reason}")
            await self._emit("disconnected", reason)
        self._schedule_reconnect()

    async def _on_failure(self, exc: BaseException) -> None:
        self._status.error = f"{type(exc).__name__}: {exc}"
        self._logger.error(f"adapter error: {self._status.error}")
        await self._emit("error", exc)

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(
            self._reconnect_loop(), name=f"reconnect-{self.protocol.value}"
        )

    async def _reconnect_loop(self) -> None:
        attempt = 0
        while self._status.state is AdapterState.DISCONNECTED:
            attempt += 1
            self._status.reconnect_attempts = attempt
            try:
                await self._policy.wait_with_retry(attempt)
            except RuntimeError:
                self._status.error = "reconnect attempts exhausted"
                self._logger.error("reconnect attempts exhausted")
                return
            if self._status.state is not AdapterState.DISCONNECTED:
                return
            mark_reconnect(self.protocol.value)
            try:
                await self._open()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                await self._on_failure(exc)
                continue
            await self._mark_connected()
            return

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Run ``coro`` in the background; shutdown waits for it."""

        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _drain_tasks(self) -> None:
        pending = [task for task in self._tasks if task is not asyncio.current_task()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    def _message(self, topic: Optional[str], payload: Payload, source: str = "", **extra: Any) -> ProtocolMessage:
        return ProtocolMessage(
            protocol=self.protocol,
            topic=topic,
            payload=payload,
            qos=extra.pop("qos", None),
            retain=extra.pop("retain", None),
            source=source,
            metadata=extra,
        )


class ServerAdapter(ProtocolAdapter):
    """Adapters that accept device traffic instead of dialling a broker.

    Inbound messages are emitted only when their topic matches a subscribed
    filter. Outbound messages without a live channel wait in a bounded
    per-topic queue until the device polls for them.
    """

    def __init__(
        self,
        *,
        subscriptions: Iterable[str] = ("iot/#",),
        outbox_size: int = 100,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._subscriptions: Set[str] = set(subscriptions)
        self._outbox_size = outbox_size
        self._outbox: Dict[str, Deque[Payload]] = {}

    @property
    def subscriptions(self) -> Set[str]:
        return set(self._subscriptions)

    async def subscribe(self, topic: str, **options: Any) -> bool:
        if not topic:
            return False
        self._subscriptions.add(topic)
        return True

    async def unsubscribe(self, topic: str) -> bool:
        if topic not in self._subscriptions:
            return False
        self._subscriptions.discard(topic)
        return True

    def accepts(self, topic: Optional[str]) -> bool:
        return bool(topic) and matches_any(self._subscriptions, topic)

    async def receive(self, topic: Optional[str], payload: Payload, source: str = "", **extra: Any) -> bool:
        """Emit an inbound device message if its topic is subscribed."""

        if not self.accepts(topic):
            record_dead_letter("unsubscribed_topic")
            self._logger.warning(f"drop message for unsubscribed topic: {topic}")
            return False
        record_adapter_message(self.protocol.value, "in")
        await self._emit("message", self._message(topic, payload, source, **extra))
        return True

    def enqueue(self, topic: str, payload: Payload) -> None:
        queue = self._outbox.setdefault(topic, deque(maxlen=self._outbox_size))
        queue.append(payload)
        record_adapter_message(self.protocol.value, "out")

    def drain(self, topic: str) -> List[Payload]:
        queue = self._outbox.pop(topic, None)
        return list(queue) if queue else []


__all__ = [
    "AdapterState",
    "AdapterStatus",
    "EVENTS",
    "ProtocolAdapter",
    "ProtocolMessage",
    "ProtocolType",
    "ServerAdapter",
    "encode_payload",
]
