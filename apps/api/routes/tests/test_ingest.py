from __future__ import annotations

import json
from typing import List

from asgiref.sync import async_to_sync
from django.test import Client, SimpleTestCase, override_settings

from apps.adapters.base import ProtocolType
from apps.api.routes.tests.urls import runtime
from apps.services.message_bus import MessageType, StandardMessage


@override_settings(ROOT_URLCONF="apps.api.routes.tests.urls")
class HttpIngestTests(SimpleTestCase):
    def setUp(self) -> None:
        self.client = Client()
        self.received: List[StandardMessage] = []
        runtime.bus.subscribe(MessageType.TELEMETRY, self.received.append)

    def tearDown(self) -> None:
        runtime.bus.unsubscribe(MessageType.TELEMETRY, self.received.append)

    def test_uplink_reaches_the_bus(self) -> None:
        response = self.client.post(
            "/api/v1/ingest/iot/acme/sensor/s1/telemetry",
            data=json.dumps({"temperature": 21.5}),
            content_type="application/json",
        )

        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.json(), {"success": True, "topic": "iot/acme/sensor/s1/telemetry", "message": None})
        self.assertEqual(len(self.received), 1)
        self.assertEqual(self.received[0].payload, {"temperature": 21.5})
        self.assertEqual(self.received[0].protocol, "http")

    def test_invalid_topic(self) -> None:
        response = self.client.post("/api/v1/ingest/devices/s1", data="{}", content_type="application/json")

        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.json()["success"])
        self.assertEqual(self.received, [])

    def test_downlink_is_polled(self) -> None:
        sent = async_to_sync(runtime.protocol_manager.send_to_device)(
            "acme", "s1", "sensor", MessageType.DEVICE_COMMAND, {"op": "reboot"}, protocol=ProtocolType.HTTP
        )
        self.assertTrue(sent)

        first = self.client.get("/api/v1/ingest/iot/acme/sensor/s1/cmd")
        second = self.client.get("/api/v1/ingest/iot/acme/sensor/s1/cmd")

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["messages"], [{"op": "reboot"}])
        self.assertEqual(second.json()["messages"], [])
