from __future__ import annotations

from datetime import datetime, timezone

import jwt
from django.test import SimpleTestCase

from apps.policy.config import PolicyConfig, StaticConfigLoader
from apps.policy.errors import ValidationError
from apps.policy.ota import OtaStrategy
from apps.policy.registry import PolicyRegistry
from apps.repositories.upgrade_history import InMemoryUpgradeHistory
from apps.schemas.bootstrap import BootstrapRequestSchema
from apps.services.bootstrap_service import BootstrapOptions, BootstrapService

SECRET = "device-credential-secret"


def _body(**overrides) -> dict:
    body = {
        "deviceId": "d1",
        "mac": "aa:bb:cc:dd:ee:ff",
        "deviceType": "DTU",
        "tenantId": "acme",
        "firmware": {"current": "1.0.0", "build": "100", "minRequired": "0.9.0"},
        "hardware": {"version": "hw-2", "serial": "SN001"},
        "capabilities": ["voltage_sensor"],
    }
    body.update(overrides)
    return body


class BootstrapServiceTests(SimpleTestCase):
    def setUp(self) -> None:
        self.now = datetime.now(timezone.utc).replace(microsecond=0)
        registry = PolicyRegistry(StaticConfigLoader(PolicyConfig()))
        ota = OtaStrategy(registry.config, InMemoryUpgradeHistory(), clock=lambda: self.now)
        options = BootstrapOptions.from_settings(
            {"broker_urls": ["mqtts://broker-a:8883", "mqtts://broker-b:8883"], "tls_enabled": True, "bogus": 1},
            credential_secret=SECRET,
        )
        self.service = BootstrapService(registry, ota, options, clock=lambda: self.now)

    def _bootstrap(self, body: dict, header_tenant=None) -> dict:
        payload = BootstrapRequestSchema(**body)
        return self.service.bootstrap(payload, header_tenant=header_tenant, raw_body=body)

    def test_bundle_contents(self) -> None:
        data = self._bootstrap(_body())["data"]

        mqtt = data["mqtt"]
        self.assertEqual(mqtt["topics"]["telemetryPub"], "iot/acme/dtu/d1/telemetry")
        self.assertEqual([broker["priority"] for broker in mqtt["brokers"]], [1, 2])
        self.assertTrue(mqtt["tls"]["enabled"])
        self.assertEqual(mqtt["username"], "acme_d1")
        self.assertTrue(mqtt["clientId"].startswith("acme_d1_"))
        self.assertEqual(len(mqtt["qosRetainPolicy"]), 9)
        self.assertEqual(data["cfg"]["device"]["uniqueId"], "AA:BB:CC:DD:EE:FF")
        self.assertEqual(data["cfg"]["device"]["type"], "dtu")
        self.assertEqual(data["cfg"]["tenant"], "acme")
        self.assertTrue(data["ota"]["available"])
        self.assertIsNone(data["websocket"])
        self.assertEqual(data["serverTime"]["timestamp"], int(self.now.timestamp() * 1000))

    def test_last_will_marks_device_offline(self) -> None:
        lwt = self._bootstrap(_body())["data"]["mqtt"]["lwt"]

        self.assertEqual(lwt["topic"], "iot/acme/dtu/d1/status")
        self.assertTrue(lwt["retain"])
        self.assertEqual(lwt["qos"], 1)
        self.assertFalse(lwt["payload"]["online"])

    def test_password_is_a_signed_device_token(self) -> None:
        mqtt = self._bootstrap(_body())["data"]["mqtt"]

        claims = jwt.decode(mqtt["password"], SECRET, algorithms=["HS256"])
        self.assertEqual(claims["sub"], "acme_d1")
        self.assertEqual(claims["type"], "device")
        self.assertEqual(claims["exp"] * 1000, mqtt["passwordExpiresAt"])

    def test_header_tenant_wins_and_must_agree(self) -> None:
        data = self._bootstrap(_body(tenantId=None), header_tenant="globex")["data"]
        self.assertEqual(data["cfg"]["tenant"], "globex")

        with self.assertRaises(ValidationError) as ctx:
            self._bootstrap(_body(), header_tenant="globex")
        self.assertEqual(ctx.exception.errors[0][0], "tenantId")

        with self.assertRaises(ValidationError):
            self._bootstrap(_body(), header_tenant="bad_tenant")

    def test_tenant_is_required_without_default(self) -> None:
        with self.assertRaises(ValidationError):
            self._bootstrap(_body(tenantId=None))

    def test_signature_is_verified(self) -> None:
        body = _body()
        body["signature"] = self.service.sign(body, "acme", "d1")
        self.assertTrue(self._bootstrap(body)["success"])

        body["hardware"] = {"version": "hw-3", "serial": "SN001"}
        with self.assertRaises(ValidationError) as ctx:
            self._bootstrap(body)
        self.assertEqual(ctx.exception.message, "invalid signature")

    def test_websocket_section_when_configured(self) -> None:
        self.service._options = BootstrapOptions(credential_secret=SECRET, websocket_url="wss://hub/ws")

        websocket = self._bootstrap(_body())["data"]["websocket"]

        self.assertEqual(websocket["url"], "wss://hub/ws")
        self.assertTrue(websocket["enabled"])
