from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from typing import List
from unittest.mock import AsyncMock, MagicMock, patch

from aiocoap import Code
from asgiref.sync import async_to_sync
from django.test import SimpleTestCase

from apps.adapters.base import AdapterState, ProtocolMessage, ProtocolType, ServerAdapter
from apps.adapters.coap_adapter import CoAPAdapter, TopicResource
from apps.adapters.factory import AdapterFactory
from apps.adapters.http_adapter import HTTPAdapter
from apps.adapters.mqtt_adapter import MQTTAdapter, MQTTConnectionKey
from apps.adapters.retry import RetryPolicy
from apps.adapters.udp_adapter import UDPAdapter, decode_datagram, encode_frame
from apps.adapters.websocket_adapter import WebSocketAdapter

TELEMETRY = "iot/acme/sensor/s1/telemetry"


class FlakyAdapter(ServerAdapter):
    """Fails ``_open`` a configurable number of times."""

    protocol = ProtocolType.HTTP

    def __init__(self, failures: int = 0, **kwargs) -> None:
        super().__init__(**kwargs)
        self.failures = failures
        self.open_calls = 0
        self.closed = False

    async def _open(self) -> None:
        self.open_calls += 1
        if self.open_calls <= self.failures:
            raise ConnectionError("refused")

    async def _close(self) -> None:
        self.closed = True

    async def publish(self, topic, payload, **options) -> bool:
        self.enqueue(topic, payload)
        return True


class RetryPolicyTests(SimpleTestCase):
    def test_exponential_backoff_is_capped(self) -> None:
        policy = RetryPolicy(base_delay=1.0, max_delay=8.0, max_attempts=5)

        self.assertEqual([policy.next_delay(n) for n in range(1, 6)], [1.0, 2.0, 4.0, 8.0, 8.0])
        with self.assertRaises(RuntimeError):
            policy.next_delay(6)
        with self.assertRaises(ValueError):
            policy.next_delay(0)

    def test_zero_attempts_retries_forever(self) -> None:
        policy = RetryPolicy(base_delay=1.0, max_delay=60.0, max_attempts=0)

        self.assertEqual(policy.next_delay(500), 60.0)
        self.assertFalse(policy.exhausted(10_000))
        self.assertTrue(RetryPolicy(max_attempts=3).exhausted(3))

    def test_from_options(self) -> None:
        policy = RetryPolicy.from_options({"base_delay": "0.5", "max_attempts": 2})

        self.assertEqual((policy.base_delay, policy.max_delay, policy.max_attempts), (0.5, 60.0, 2))


class AdapterLifecycleTests(SimpleTestCase):
    def test_initialize_connects_and_emits(self) -> None:
        adapter = FlakyAdapter()
        events: List[str] = []
        adapter.on("connected", lambda: events.append("connected"))
        adapter.on("disconnected", lambda reason: events.append(f"disconnected:{reason}"))

        async def scenario() -> None:
            await adapter.initialize()
            self.assertEqual(adapter.state, AdapterState.CONNECTED)
            self.assertIsNotNone(adapter.status.last_connected)
            await adapter.shutdown()

        async_to_sync(scenario)()

        self.assertEqual(adapter.state, AdapterState.CLOSED)
        self.assertTrue(adapter.closed)
        self.assertEqual(events, ["connected", "disconnected:shutdown"])

    def test_failed_open_reconnects_with_backoff(self) -> None:
        adapter = FlakyAdapter(failures=2, retry_policy=RetryPolicy(base_delay=0, max_delay=0, max_attempts=5))
        errors: List[BaseException] = []
        adapter.on("error", errors.append)

        async def scenario() -> None:
            await adapter.initialize()
            self.assertEqual(adapter.state, AdapterState.DISCONNECTED)
            await adapter._reconnect_task
            await adapter.shutdown()

        with patch("apps.adapters.base.mark_reconnect") as mocked_reconnect:
            async_to_sync(scenario)()

        self.assertEqual(adapter.open_calls, 3)
        self.assertEqual(len(errors), 2)
        self.assertEqual(mocked_reconnect.call_count, 2)
        self.assertEqual(adapter.status.reconnect_attempts, 0)
        self.assertIsNone(adapter.status.error)

    def test_reconnect_gives_up_after_max_attempts(self) -> None:
        adapter = FlakyAdapter(failures=99, retry_policy=RetryPolicy(base_delay=0, max_delay=0, max_attempts=2))

        async def scenario() -> None:
            await adapter.initialize()
            await adapter._reconnect_task

        async_to_sync(scenario)()

        self.assertEqual(adapter.state, AdapterState.DISCONNECTED)
        self.assertEqual(adapter.status.reconnect_attempts, 3)
        self.assertEqual(adapter.status.error, "reconnect attempts exhausted")

    def test_shutdown_cancels_pending_reconnect(self) -> None:
        adapter = FlakyAdapter(failures=99, retry_policy=RetryPolicy(base_delay=30, max_delay=30))

        async def scenario() -> asyncio.Task:
            await adapter.initialize()
            task = adapter._reconnect_task
            await asyncio.sleep(0)
            await adapter.shutdown()
            return task

        task = async_to_sync(scenario)()

        self.assertTrue(task.cancelled())
        self.assertEqual(adapter.state, AdapterState.CLOSED)
        self.assertEqual(adapter.open_calls, 1)

    def test_disabled_adapter_refuses_to_start(self) -> None:
        adapter = FlakyAdapter(enabled=False)

        with self.assertRaises(ValueError):
            async_to_sync(adapter.initialize)()

    def test_listener_failure_does_not_stop_other_listeners(self) -> None:
        adapter = FlakyAdapter()
        received: List[ProtocolMessage] = []

        def broken(message: ProtocolMessage) -> None:
            raise RuntimeError("boom")

        adapter.on("message", broken)
        adapter.on("message", received.append)
        async_to_sync(adapter.receive)(TELEMETRY, b"{}")

        self.assertEqual(len(received), 1)
        with self.assertRaises(ValueError):
            adapter.on("bogus", received.append)


class ServerAdapterTests(SimpleTestCase):
    def test_only_subscribed_topics_are_emitted(self) -> None:
        adapter = FlakyAdapter(subscriptions=["iot/acme/+/+/telemetry"])
        received: List[ProtocolMessage] = []
        adapter.on("message", received.append)

        with patch("apps.adapters.base.record_dead_letter") as mocked_dead_letter:
            accepted = async_to_sync(adapter.receive)(TELEMETRY, {"t": 1}, source="10.0.0.1", qos=1)
            rejected = async_to_sync(adapter.receive)("iot/acme/sensor/s1/status", {"online": True})

        self.assertTrue(accepted)
        self.assertFalse(rejected)
        mocked_dead_letter.assert_called_once_with("unsubscribed_topic")
        self.assertEqual(received[0].topic, TELEMETRY)
        self.assertEqual(received[0].qos, 1)
        self.assertEqual(received[0].source, "10.0.0.1")
        self.assertEqual(received[0].protocol, ProtocolType.HTTP)

    def test_subscribe_and_unsubscribe(self) -> None:
        adapter = FlakyAdapter(subscriptions=[])

        self.assertTrue(async_to_sync(adapter.subscribe)("iot/acme/#"))
        self.assertTrue(adapter.accepts(TELEMETRY))
        self.assertTrue(async_to_sync(adapter.unsubscribe)("iot/acme/#"))
        self.assertFalse(async_to_sync(adapter.unsubscribe)("iot/acme/#"))
        self.assertFalse(adapter.accepts(TELEMETRY))

    def test_outbox_is_bounded_per_topic(self) -> None:
        adapter = FlakyAdapter(outbox_size=2)
        for index in range(3):
            async_to_sync(adapter.publish)("iot/acme/sensor/s1/cmd", {"n": index})

        self.assertEqual(adapter.drain("iot/acme/sensor/s1/cmd"), [{"n": 1}, {"n": 2}])
        self.assertEqual(adapter.drain("iot/acme/sensor/s1/cmd"), [])


class UDPAdapterTests(SimpleTestCase):
    def test_decodes_json_and_binary_datagrams(self) -> None:
        topic, payload, extra = decode_datagram(json.dumps({"topic": TELEMETRY, "payload": {"t": 1}, "qos": 0}).encode())
        self.assertEqual((topic, payload, extra), (TELEMETRY, {"t": 1}, {"qos": 0}))

        topic, payload, extra = decode_datagram(encode_frame(TELEMETRY, b"\x01\x02"))
        self.assertEqual((topic, payload, extra), (TELEMETRY, b"\x01\x02", {}))

    def test_rejects_malformed_datagrams(self) -> None:
        self.assertIsNone(decode_datagram(b"{not json"))
        self.assertIsNone(decode_datagram(b'{"payload": 1}'))
        self.assertIsNone(decode_datagram(b"\x00"))
        self.assertIsNone(decode_datagram(b"\x00\x10iot"))

    def test_replies_to_last_seen_peer(self) -> None:
        adapter = UDPAdapter(port=0)
        adapter._transport = MagicMock()
        received: List[ProtocolMessage] = []
        adapter.on("message", received.append)

        accepted = async_to_sync(adapter.handle_datagram)(encode_frame(TELEMETRY, b"hi"), ("10.0.0.9", 40000))
        sent = async_to_sync(adapter.publish)("iot/acme/sensor/s1/cmd", {"op": "reboot"})

        self.assertTrue(accepted)
        self.assertEqual(received[0].source, "10.0.0.9:40000")
        self.assertTrue(sent)
        adapter._transport.sendto.assert_called_once_with(
            encode_frame("iot/acme/sensor/s1/cmd", {"op": "reboot"}), ("10.0.0.9", 40000)
        )
        self.assertFalse(async_to_sync(adapter.publish)("iot/acme/sensor/s2/cmd", {}))

    def test_dropped_datagram_does_not_rebind_peer(self) -> None:
        adapter = UDPAdapter(port=0, subscriptions=("iot/+/+/+/telemetry",))
        adapter._transport = MagicMock()

        self.assertTrue(async_to_sync(adapter.handle_datagram)(encode_frame(TELEMETRY, b"hi"), ("10.0.0.9", 1)))
        self.assertFalse(
            async_to_sync(adapter.handle_datagram)(encode_frame("iot/acme/sensor/s1/nope", b"x"), ("6.6.6.6", 2))
        )
        async_to_sync(adapter.publish)("iot/acme/sensor/s1/cmd", {"op": "reboot"})

        adapter._transport.sendto.assert_called_once_with(
            encode_frame("iot/acme/sensor/s1/cmd", {"op": "reboot"}), ("10.0.0.9", 1)
        )

    def test_unparseable_topics_are_not_remembered(self) -> None:
        adapter = UDPAdapter(port=0)

        async_to_sync(adapter.handle_datagram)(encode_frame("iot/acme", b"x"), ("6.6.6.6", 2))
        async_to_sync(adapter.handle_datagram)(encode_frame("other/topic", b"x"), ("6.6.6.6", 3))

        self.assertEqual(len(adapter._peers), 0)

    def test_peer_table_evicts_least_recent(self) -> None:
        adapter = UDPAdapter(port=0, max_peers=2)
        for index, device_id in enumerate(("s1", "s2", "s1", "s3")):
            frame = encode_frame(f"iot/acme/sensor/{device_id}/telemetry", b"x")
            async_to_sync(adapter.handle_datagram)(frame, ("10.0.0.1", index))

        self.assertEqual(list(adapter._peers), ["iot/acme/sensor/s1", "iot/acme/sensor/s3"])
        self.assertEqual(adapter._peers["iot/acme/sensor/s1"], ("10.0.0.1", 2))

    def test_shutdown_waits_for_in_flight_datagrams(self) -> None:
        adapter = UDPAdapter(port=0)
        received: List[ProtocolMessage] = []

        async def slow_listener(message: ProtocolMessage) -> None:
            await asyncio.sleep(0.01)
            received.append(message)

        adapter.on("message", slow_listener)

        async def run() -> None:
            adapter._spawn(adapter.handle_datagram(encode_frame(TELEMETRY, b"hi"), ("10.0.0.9", 1)))
            self.assertEqual(len(adapter._tasks), 1)
            await adapter.shutdown()

        async_to_sync(run)()

        self.assertEqual(len(received), 1)
        self.assertEqual(adapter._tasks, set())

    def test_malformed_datagram_is_dead_lettered(self) -> None:
        adapter = UDPAdapter(port=0)

        with patch("apps.adapters.udp_adapter.record_dead_letter") as mocked_dead_letter:
            accepted = async_to_sync(adapter.handle_datagram)(b"\xff", ("10.0.0.9", 1))

        self.assertFalse(accepted)
        mocked_dead_letter.assert_called_once_with("malformed_datagram")


class WebSocketAdapterTests(SimpleTestCase):
    def setUp(self) -> None:
        self.adapter = WebSocketAdapter(port=0)
        self.connection = AsyncMock()
        self.client_id = self.adapter.register_client(self.connection)

    def test_publish_frame_is_emitted_and_acked(self) -> None:
        received: List[ProtocolMessage] = []
        self.adapter.on("message", received.append)
        frame = json.dumps({"action": "publish", "id": "7", "topic": TELEMETRY, "payload": {"t": 21.5}})

        ack = async_to_sync(self.adapter.handle_frame)(self.client_id, frame)

        self.assertEqual(ack, {"type": "ack", "id": "7", "action": "publish", "success": True})
        self.assertEqual(received[0].payload, {"t": 21.5})
        self.connection.send.assert_awaited_once()

    def test_publish_reaches_subscribed_clients_only(self) -> None:
        other = AsyncMock()
        self.adapter.register_client(other)
        subscribe = json.dumps({"action": "subscribe", "topic": "iot/acme/sensor/s1/cmd"})
        async_to_sync(self.adapter.handle_frame)(self.client_id, subscribe)
        self.connection.send.reset_mock()

        delivered = async_to_sync(self.adapter.publish)("iot/acme/sensor/s1/cmd", b'{"op":"reboot"}')

        self.assertTrue(delivered)
        sent = json.loads(self.connection.send.await_args.args[0])
        self.assertEqual(sent["type"], "message")
        self.assertEqual(sent["payload"], {"op": "reboot"})
        other.send.assert_not_awaited()
        self.assertEqual(self.adapter.client_count, 2)

    def test_invalid_frames(self) -> None:
        with patch("apps.adapters.websocket_adapter.record_dead_letter") as mocked_dead_letter:
            ack = async_to_sync(self.adapter.handle_frame)(self.client_id, "not json")
        self.assertFalse(ack["success"])
        mocked_dead_letter.assert_called_once_with("malformed_frame")

        ack = async_to_sync(self.adapter.handle_frame)(self.client_id, json.dumps({"action": "dance", "topic": "x"}))
        self.assertEqual(ack["error"], "unsupported action")
        ack = async_to_sync(self.adapter.handle_frame)(self.client_id, json.dumps({"action": "publish"}))
        self.assertEqual(ack["error"], "topic required")


class MQTTAdapterTests(SimpleTestCase):
    def test_connection_key_from_url(self) -> None:
        key = MQTTConnectionKey.from_broker_url("mqtts://user:pw@broker.local", "core")

        self.assertEqual((key.host, key.port, key.tls), ("broker.local", 8883, True))
        self.assertEqual((key.username, key.password), ("user", "pw"))
        self.assertEqual(MQTTConnectionKey.from_broker_url("mqtt://b:1884", "c").port, 1884)
        with self.assertRaises(ValueError):
            MQTTConnectionKey.from_broker_url("mqtt://", "c")

    def test_dispatches_broker_messages(self) -> None:
        adapter = MQTTAdapter(broker_url="mqtt://broker.local:1883")
        received: List[ProtocolMessage] = []
        adapter.on("message", received.append)

        async def scenario() -> None:
            adapter._dispatch_message(TELEMETRY, b'{"t":1}', 1, False)
            await asyncio.sleep(0)
            await asyncio.sleep(0)

        async_to_sync(scenario)()

        self.assertEqual(len(received), 1)
        self.assertEqual(received[0].protocol, ProtocolType.MQTT)
        self.assertEqual(received[0].payload, b'{"t":1}')
        self.assertEqual(received[0].source, "broker.local")

    def test_dispatch_tasks_are_tracked_until_shutdown(self) -> None:
        adapter = MQTTAdapter(broker_url="mqtt://broker.local:1883")
        received: List[ProtocolMessage] = []

        async def slow_listener(message: ProtocolMessage) -> None:
            await asyncio.sleep(0.01)
            received.append(message)

        adapter.on("message", slow_listener)

        async def scenario() -> None:
            adapter._dispatch_message(TELEMETRY, b"{}", 0, False)
            self.assertEqual(len(adapter._tasks), 1)
            await adapter.shutdown()

        async_to_sync(scenario)()

        self.assertEqual(len(received), 1)
        self.assertEqual(adapter._tasks, set())

    def test_publish_and_subscribe_while_disconnected(self) -> None:
        adapter = MQTTAdapter(broker_url="mqtt://broker.local")

        self.assertFalse(async_to_sync(adapter.publish)(TELEMETRY, {"t": 1}))
        self.assertTrue(async_to_sync(adapter.subscribe)("iot/acme/#", qos=0))
        self.assertEqual(adapter._topics["iot/acme/#"], 0)
        self.assertTrue(async_to_sync(adapter.unsubscribe)("iot/acme/#"))
        self.assertFalse(async_to_sync(adapter.unsubscribe)("iot/acme/#"))


class CoAPAdapterTests(SimpleTestCase):
    @staticmethod
    def _request(path: str, payload: bytes = b"") -> SimpleNamespace:
        return SimpleNamespace(
            opt=SimpleNamespace(uri_path=tuple(path.split("/"))),
            payload=payload,
            remote=SimpleNamespace(hostinfo="[::1]:5683"),
        )

    def test_post_emits_message(self) -> None:
        adapter = CoAPAdapter(port=0)
        resource = TopicResource(adapter)
        received: List[ProtocolMessage] = []
        adapter.on("message", received.append)

        response = async_to_sync(resource.render_post)(self._request("acme/sensor/s1/telemetry", b'{"t":1}'))

        self.assertEqual(response.code, Code.CHANGED)
        self.assertEqual(received[0].topic, TELEMETRY)
        self.assertEqual(received[0].source, "[::1]:5683")

    def test_post_rejections(self) -> None:
        adapter = CoAPAdapter(port=0, subscriptions=["iot/acme/+/+/status"])
        resource = TopicResource(adapter)

        bad = async_to_sync(resource.render_post)(self._request("acme/sensor"))
        unsubscribed = async_to_sync(resource.render_post)(self._request("acme/sensor/s1/telemetry"))

        self.assertEqual(bad.code, Code.BAD_REQUEST)
        self.assertEqual(unsubscribed.code, Code.NOT_FOUND)

    def test_get_drains_queued_commands(self) -> None:
        adapter = CoAPAdapter(port=0)
        resource = TopicResource(adapter)
        async_to_sync(adapter.publish)("iot/acme/sensor/s1/cmd", {"op": "reboot"})

        response = async_to_sync(resource.render_get)(self._request("acme/sensor/s1/cmd"))
        empty = async_to_sync(resource.render_get)(self._request("acme/sensor/s1/cmd"))

        self.assertEqual(response.code, Code.CONTENT)
        self.assertEqual(json.loads(response.payload), [{"op": "reboot"}])
        self.assertEqual(json.loads(empty.payload), [])


class AdapterFactoryTests(SimpleTestCase):
    def test_builds_each_protocol(self) -> None:
        factory = AdapterFactory()

        self.assertIsInstance(factory.create("http", {"subscriptions": ["iot/acme/#"]}), HTTPAdapter)
        self.assertIsInstance(factory.create("websocket", {"port": 9001}), WebSocketAdapter)
        self.assertIsInstance(factory.create("udp", {}), UDPAdapter)
        self.assertIsInstance(factory.create("coap", {}), CoAPAdapter)
        mqtt = factory.create(ProtocolType.MQTT, {"broker_url": "mqtt://b", "retry": {"max_attempts": 0}})
        self.assertIsInstance(mqtt, MQTTAdapter)

    def test_rejects_bad_options(self) -> None:
        factory = AdapterFactory()

        with self.assertRaises(ValueError):
            factory.create("carrier-pigeon", {})
        with self.assertRaises(ValueError):
            factory.create("mqtt", {})

    def test_create_enabled_skips_disabled(self) -> None:
        adapters = AdapterFactory().create_enabled(
            {"http": {"enabled": True}, "udp": {"enabled": False}, "coap": {}}
        )

        self.assertEqual([adapter.protocol for adapter in adapters], [ProtocolType.HTTP])
