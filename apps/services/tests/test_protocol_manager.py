from __future__ import annotations

from typing import Any, List, Tuple
from unittest.mock import patch

from asgiref.sync import async_to_sync
from django.test import SimpleTestCase

from apps.adapters.base import Payload, ProtocolMessage, ProtocolType, ServerAdapter
from apps.policy.config import PolicyConfig, StaticConfigLoader
from apps.policy.registry import PolicyRegistry
from apps.services.message_bus import MessageBus, MessageType, StandardMessage
from apps.services.protocol_manager import ProtocolManager, classify, parse_payload


class RecordingAdapter(ServerAdapter):
    """记录下行消息，不打开任何 socket。"""

    protocol = ProtocolType.MQTT

    def __init__(self, protocol: ProtocolType = ProtocolType.MQTT, fail_close: bool = False, **kwargs: Any) -> None:
        self.protocol = protocol
        super().__init__(**kwargs)
        self.fail_close = fail_close
        self.published: List[Tuple[str, Payload, dict]] = []

    async def _open(self) -> None:
        return None

    async def _close(self) -> None:
        if self.fail_close:
            raise RuntimeError("socket stuck")

    async def publish(self, topic: str, payload: Payload, **options: Any) -> bool:
        self.published.append((topic, payload, options))
        return True


class ClassifyTests(SimpleTestCase):
    def test_inbound_channels(self) -> None:
        self.assertEqual(classify("telemetry"), MessageType.TELEMETRY)
        self.assertEqual(classify("status"), MessageType.STATUS_CHANGE)
        self.assertEqual(classify("ota/status"), MessageType.OTA_STATUS)
        self.assertEqual(classify("shadow/reported"), MessageType.SHADOW_REPORTED)
        self.assertIsNone(classify("cmd"))
        self.assertIsNone(classify("debug"))

    def test_parse_payload_variants(self) -> None:
        self.assertEqual(parse_payload({"t": 1}), {"t": 1})
        self.assertEqual(parse_payload([1, 2]), {"data": [1, 2]})
        self.assertEqual(parse_payload(b'{"t": 1}'), {"t": 1})
        self.assertEqual(parse_payload("42"), {"data": 42})
        self.assertEqual(parse_payload("hello"), {"data": "hello"})
        self.assertEqual(parse_payload(b"\xff\x00"), {"raw": "ff00"})


class ProtocolManagerTests(SimpleTestCase):
    def setUp(self) -> None:
        self.bus = MessageBus()
        self.registry = PolicyRegistry(StaticConfigLoader(PolicyConfig()))
        self.manager = ProtocolManager(self.bus, self.registry)
        self.adapter = RecordingAdapter(subscriptions=["#"])
        self.manager.register_adapter(self.adapter)
        self.received: List[StandardMessage] = []
        self.bus.subscribe_all(self.received.append)

    def _inbound(self, topic: str, payload: Payload = b'{"t": 21.5}') -> None:
        async_to_sync(self.adapter.receive)(topic, payload, source="broker")

    def test_duplicate_registration_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.manager.register_adapter(RecordingAdapter())
        self.assertEqual(self.manager.registered_protocols(), [ProtocolType.MQTT])

    def test_telemetry_becomes_standard_message(self) -> None:
        self._inbound("iot/acme/ps_ctrl/d1/telemetry")

        self.assertEqual(len(self.received), 1)
        message = self.received[0]
        self.assertEqual(message.type, MessageType.TELEMETRY)
        self.assertEqual(message.tenant_id, "acme")
        self.assertEqual(message.device_type, "ps-ctrl")
        self.assertEqual(message.device_id, "d1")
        self.assertEqual(message.payload, {"t": 21.5})
        self.assertEqual(message.protocol, "mqtt")
        self.assertIsNone(message.gateway_id)
        self.assertNotIn("gatewayId", message.as_dict())

    def test_sub_device_message_carries_gateway(self) -> None:
        self._inbound("iot/acme/gateway/gw1/subdev/s7/status", b'{"online": true}')

        message = self.received[0]
        self.assertEqual(message.type, MessageType.STATUS_CHANGE)
        self.assertEqual(message.device_id, "s7")
        self.assertEqual(message.gateway_id, "gw1")
        self.assertEqual(message.as_dict()["gatewayId"], "gw1")

    def test_unclassified_and_unparseable_topics_are_dropped(self) -> None:
        with patch("apps.services.protocol_manager.record_dead_letter") as mocked_dead_letter:
            self._inbound("iot/acme/sensor/s1/debug")
            self._inbound("devices/s1/telemetry")

        self.assertEqual(self.received, [])
        self.assertEqual(
            [call.args[0] for call in mocked_dead_letter.call_args_list],
            ["unclassified_channel", "unparseable_topic"],
        )

    def test_send_to_device_applies_policy_hints(self) -> None:
        sent = async_to_sync(self.manager.send_to_device)(
            "acme", "d1", "dtu", MessageType.SHADOW_DESIRED, {"reportInterval": 30}
        )

        self.assertTrue(sent)
        topic, payload, options = self.adapter.published[0]
        self.assertEqual(topic, "iot/acme/dtu/d1/shadow/desired")
        self.assertEqual(payload, {"reportInterval": 30})
        self.assertEqual(options, {"qos": 1, "retain": True})

    def test_caller_options_win_over_policy_hints(self) -> None:
        async_to_sync(self.manager.send_to_device)(
            "acme", "d1", "dtu", MessageType.DEVICE_COMMAND, {"op": "reboot"}, qos=2
        )

        topic, _, options = self.adapter.published[0]
        self.assertEqual(topic, "iot/acme/dtu/d1/cmd")
        self.assertEqual(options, {"qos": 2, "retain": False})

    def test_send_without_adapter_returns_false(self) -> None:
        sent = async_to_sync(self.manager.send_to_device)(
            "acme", "d1", "dtu", MessageType.DEVICE_COMMAND, {}, protocol=ProtocolType.UDP
        )

        self.assertFalse(sent)
        self.assertEqual(self.adapter.published, [])

    def test_shutdown_continues_past_failures(self) -> None:
        broken = RecordingAdapter(protocol=ProtocolType.HTTP, fail_close=True)
        tail = RecordingAdapter(protocol=ProtocolType.UDP)
        self.manager.register_adapter(broken)
        self.manager.register_adapter(tail)

        async def scenario() -> None:
            await self.manager.initialize()
            await self.manager.shutdown()

        async_to_sync(scenario)()

        status = self.manager.all_adapter_status()
        self.assertEqual(status["mqtt"]["state"], "closed")
        self.assertEqual(status["udp"]["state"], "closed")
        self.assertEqual(status["http"]["state"], "closed")

    def test_unregister_adapter(self) -> None:
        self.assertTrue(async_to_sync(self.manager.unregister_adapter)(ProtocolType.MQTT))
        self.assertFalse(async_to_sync(self.manager.unregister_adapter)(ProtocolType.MQTT))
        self.assertIsNone(self.manager.adapter_status(ProtocolType.MQTT))

        self._inbound("iot/acme/dtu/d1/telemetry")
        self.assertEqual(self.received, [])
