from __future__ import annotations

from datetime import datetime, timezone
from typing import List

from asgiref.sync import async_to_sync
from django.test import SimpleTestCase

from apps.repositories.upgrade_history import InMemoryUpgradeHistory
from apps.services.message_bus import MessageBus, MessageType, StandardMessage
from apps.services.ota_tracking import OtaStatusRecorder

NOW = datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)


def _message(message_type: MessageType = MessageType.TELEMETRY, **payload) -> StandardMessage:
    return StandardMessage(
        type=message_type,
        tenant_id="acme",
        device_type="dtu",
        device_id="d1",
        topic="iot/acme/dtu/d1/telemetry",
        payload=payload,
        timestamp=NOW,
        protocol="mqtt",
    )


class MessageBusTests(SimpleTestCase):
    def test_typed_handlers_run_before_catch_all(self) -> None:
        bus = MessageBus()
        order: List[str] = []

        async def typed(message: StandardMessage) -> None:
            order.append("typed")

        bus.subscribe_all(lambda message: order.append("all"))
        bus.subscribe(MessageType.TELEMETRY, typed)
        bus.subscribe(MessageType.STATUS_CHANGE, lambda message: order.append("status"))

        delivered = async_to_sync(bus.publish)(_message())

        self.assertEqual(delivered, 2)
        self.assertEqual(order, ["typed", "all"])

    def test_failing_handler_is_isolated(self) -> None:
        bus = MessageBus()
        seen: List[StandardMessage] = []

        def broken(message: StandardMessage) -> None:
            raise RuntimeError("downstream unavailable")

        bus.subscribe(MessageType.TELEMETRY, broken)
        bus.subscribe(MessageType.TELEMETRY, seen.append)

        with self.assertLogs("message_bus", level="ERROR"):
            delivered = async_to_sync(bus.publish)(_message())

        self.assertEqual(delivered, 1)
        self.assertEqual(len(seen), 1)

    def test_unsubscribe(self) -> None:
        bus = MessageBus()
        handler = lambda message: None  # noqa: E731
        bus.subscribe(MessageType.TELEMETRY, handler)
        bus.subscribe_all(handler)

        self.assertEqual(bus.handler_count(MessageType.TELEMETRY), 1)
        self.assertTrue(bus.unsubscribe(MessageType.TELEMETRY, handler))
        self.assertFalse(bus.unsubscribe(MessageType.TELEMETRY, handler))
        self.assertTrue(bus.unsubscribe(None, handler))
        self.assertEqual(bus.handler_count(), 0)

    def test_as_dict_uses_wire_names(self) -> None:
        body = _message(t=1).as_dict()

        self.assertEqual(body["type"], "telemetry")
        self.assertEqual(body["tenantId"], "acme")
        self.assertEqual(body["timestamp"], NOW.isoformat())


class OtaStatusRecorderTests(SimpleTestCase):
    def setUp(self) -> None:
        self.history = InMemoryUpgradeHistory()
        self.bus = MessageBus()
        OtaStatusRecorder(self.history, clock=lambda: NOW).attach(self.bus)

    def test_records_completed_upgrade(self) -> None:
        async_to_sync(self.bus.publish)(_message(MessageType.OTA_STATUS, status="SUCCESS", version="1.2.4"))

        self.assertEqual(self.history.last_upgrade_at("acme", "d1"), NOW)

    def test_ignores_progress_and_failures(self) -> None:
        async_to_sync(self.bus.publish)(_message(MessageType.OTA_STATUS, status="failed"))
        async_to_sync(self.bus.publish)(_message(MessageType.OTA_PROGRESS, status="success"))

        self.assertIsNone(self.history.last_upgrade_at("acme", "d1"))

    def test_accepts_state_field(self) -> None:
        recorder = OtaStatusRecorder(self.history, clock=lambda: NOW)

        self.assertTrue(recorder.handle(_message(MessageType.OTA_STATUS, state="done")))
        self.assertFalse(recorder.handle(_message(MessageType.OTA_STATUS)))
