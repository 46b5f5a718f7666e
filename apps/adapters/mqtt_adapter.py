"""MQTT adapter built on a single Paho client.

Paho runs its network loop in a background thread; every callback hops back
onto the asyncio loop with ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import paho.mqtt.client as mqtt

from apps.policy.errors import TransportError
from apps.telemetry.metrics import record_adapter_message

from .base import Payload, ProtocolAdapter, ProtocolType, encode_payload
from .retry import RetryPolicy


def _is_success(reason_code: Any) -> bool:
    """Paho/MQTT result code helper (0 is success)."""

    return getattr(reason_code, "value", reason_code) == 0


@dataclass(frozen=True)
class MQTTConnectionKey:
    host: str
    port: int
    username: str
    password: str
    client_id: str
    tls: bool = False

    @classmethod
    def from_broker_url(cls, broker_url: str, client_id: str) -> "MQTTConnectionKey":
        url = urlparse(broker_url)
        host = url.hostname
        if not host:
            raise ValueError("MQTT broker_url missing host")
        tls = url.scheme in ("mqtts", "ssl")
        port = url.port or (8883 if tls else 1883)
        return cls(
            host=host,
            port=port,
            username=url.username or "",
            password=url.password or "",
            client_id=client_id,
            tls=tls,
        )


class MQTTAdapter(ProtocolAdapter):
    """Bridge between the external broker and the protocol manager."""

    protocol = ProtocolType.MQTT

    def __init__(
        self,
        *,
        broker_url: str,
        client_id: str = "devicehub-core",
        subscriptions: tuple = ("iot/+/+/+/#",),
        keepalive: int = 60,
        default_qos: int = 1,
        connect_timeout: float = 10.0,
        publish_timeout: float = 5.0,
        retry_policy: Optional[RetryPolicy] = None,
        enabled: bool = True,
    ) -> None:
        super().__init__(enabled=enabled, retry_policy=retry_policy)
        self._key = MQTTConnectionKey.from_broker_url(broker_url, client_id)
        self._keepalive = keepalive
        self._default_qos = default_qos
        self._connect_timeout = connect_timeout
        self._publish_timeout = publish_timeout
        self._topics: Dict[str, int] = {topic: default_qos for topic in subscriptions}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected = asyncio.Event()
        self._loop_running = False
        self._has_connected = False
        self._logger = self._logger.bind(broker=self._key.host, port=self._key.port)

        self._client = mqtt.Client(
            client_id=self._key.client_id,
            protocol=mqtt.MQTTv311,
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        if self._key.username:
            self._client.username_pw_set(self._key.username, self._key.password)
        if self._key.tls:
            self._client.tls_set()
        self._client.on_connect = self._on_connect
        self._client.on_message = self._on_message
        self._client.on_disconnect = self._on_disconnect

    # -- paho callbacks (network thread) ----------------------------------------

    def _on_connect(self, client: mqtt.Client, userdata, flags, reason_code, properties=None, *extra) -> None:
        if _is_success(reason_code):
            self._logger.info("MQTT connected")
            if self._loop:
                self._loop.call_soon_threadsafe(self._handle_connected)
        else:
            code = getattr(reason_code, "value", reason_code)
            self._logger.warning(f"MQTT connect failed; code={code}")

    def _on_disconnect(self, client: mqtt.Client, userdata, flags, reason_code=None, properties=None, *extra) -> None:
        code = getattr(reason_code, "value", reason_code)
        self._logger.info(f"MQTT disconnected; code={code}")
        if self._loop:
            self._loop.call_soon_threadsafe(self._handle_disconnected, f"code={code}")

    def _on_message(self, client: mqtt.Client, userdata, msg: mqtt.MQTTMessage) -> None:
        if self._loop:
            self._loop.call_soon_threadsafe(
                self._dispatch_message, msg.topic, bytes(msg.payload), msg.qos, bool(msg.retain)
            )

    # -- asyncio side -------------------------------------------------------------

    def _handle_connected(self) -> None:
        self._connected.set()
        for topic, qos in self._topics.items():
            self._client.subscribe(topic, qos=qos)
        if self._has_connected:
            # paho reconnected on its own
            self._spawn(self._mark_connected())
        self._has_connected = True

    def _handle_disconnected(self, reason: str) -> None:
        self._connected.clear()
        self._spawn(self._mark_disconnected(reason))

    def _dispatch_message(self, topic: str, payload: bytes, qos: int, retain: bool) -> None:
        record_adapter_message(self.protocol.value, "in")
        message = self._message(topic, payload, source=self._key.host, qos=qos, retain=retain)
        self._spawn(self._emit("message", message))

    async def _open(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._connected.clear()
        if not self._loop_running:
            self._client.loop_start()
            self._loop_running = True
        connect = self._client.reconnect if self._has_connected else self._connect
        await self._loop.run_in_executor(None, connect)
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=self._connect_timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError("MQTT CONNACK timeout") from exc

    def _connect(self) -> None:
        self._client.connect(self._key.host, self._key.port, self._keepalive)

    async def _close(self) -> None:
        if self._client.is_connected():
            self._client.disconnect()
        if self._loop_running:
            self._client.loop_stop()
            self._loop_running = False
        self._connected.clear()

    async def publish(self, topic: str, payload: Payload, **options: Any) -> bool:
        if not self._connected.is_set():
            self._logger.warning(f"MQTT publish while disconnected: {topic}")
            return False
        qos = int(options.get("qos", self._default_qos))
        retain = bool(options.get("retain", False))
        try:
            info = self._client.publish(topic, payload=encode_payload(payload), qos=qos, retain=retain)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                raise TransportError(f"MQTT publish rc={info.rc}")
            if qos > 0:
                await asyncio.get_running_loop().run_in_executor(
                    None, info.wait_for_publish, self._publish_timeout
                )
        except (ConnectionError, RuntimeError, ValueError) as exc:
            await self._on_failure(exc)
            return False
        record_adapter_message(self.protocol.value, "out")
        return True

    async def subscribe(self, topic: str, **options: Any) -> bool:
        qos = int(options.get("qos", self._default_qos))
        self._topics[topic] = qos
        if not self._connected.is_set():
            # applied on the next CONNACK
            return True
        rc, _ = self._client.subscribe(topic, qos=qos)
        return rc == mqtt.MQTT_ERR_SUCCESS

    async def unsubscribe(self, topic: str) -> bool:
        if self._topics.pop(topic, None) is None:
            return False
        if self._connected.is_set():
            rc, _ = self._client.unsubscribe(topic)
            return rc == mqtt.MQTT_ERR_SUCCESS
        return True


__all__ = ["MQTTAdapter", "MQTTConnectionKey"]
