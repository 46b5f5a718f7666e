from __future__ import annotations

import json

from django.test import SimpleTestCase

from apps.policy.models import BootstrapRequest
from apps.policy.resolver import PolicyResolver, PolicyResolverFactory


def _request(device_id: str, device_type: str, capabilities=()) -> BootstrapRequest:
    return BootstrapRequest(
        device_id=device_id,
        mac="AA:BB:CC:DD:EE:FF",
        device_type=device_type,
        capabilities=tuple(capabilities),
    )


class PolicyResolverTests(SimpleTestCase):
    def test_low_power_sensor_scenario(self) -> None:
        resolver = PolicyResolver("acme", "sensor")
        result = resolver.resolve_policy(_request("s1", "sensor", ["low_power_mode"]), "acme")

        self.assertEqual(result.topics.telemetry_pub, "iot/acme/sensor/s1/telemetry")
        telemetry = result.qos_for(result.topics.telemetry_pub)
        self.assertEqual((telemetry.qos, telemetry.retain), (0, False))
        self.assertEqual(telemetry.reason, "low_power_optimization")
        status = result.qos_for(result.topics.status_pub)
        self.assertEqual((status.qos, status.retain), (1, True))
        self.assertEqual(result.qos_for(result.topics.shadow_reported_pub).qos, 0)

    def test_regular_device_keeps_baseline_qos(self) -> None:
        result = PolicyResolver("acme", "dtu").resolve_policy(_request("d1", "dtu"))

        self.assertEqual(result.qos_for(result.topics.telemetry_pub).qos, 1)
        self.assertTrue(result.qos_for(result.topics.cfg_sub).retain)
        self.assertFalse(result.qos_for(result.topics.cmd_sub).retain)

    def test_qos_policy_covers_each_topic_once(self) -> None:
        result = PolicyResolver("acme", "gateway").resolve_policy(_request("gw1", "gateway"))
        policy_topics = [entry.topic for entry in result.qos_retain_policy]

        self.assertEqual(sorted(policy_topics), sorted(result.topics.all()))
        self.assertEqual(len(set(policy_topics)), len(policy_topics))

    def test_acl_lists_and_deny_patterns(self) -> None:
        result = PolicyResolver("acme", "dtu").resolve_policy(_request("d1", "dtu"))

        self.assertIn("iot/acme/dtu/d1/telemetry", result.acl.publish)
        self.assertIn("iot/acme/dtu/d1/ota/progress", result.acl.publish)
        self.assertIn("iot/acme/dtu/d1/cmd", result.acl.subscribe)
        self.assertNotIn("iot/acme/dtu/d1/cmd", result.acl.publish)
        self.assertEqual(
            result.acl.deny,
            ("iot/+/+/+/admin/+", "iot/+/+/+/system/+", "iot/+/+/+/debug/+"),
        )
        for topic in result.acl.publish + result.acl.subscribe:
            self.assertTrue(topic.startswith("iot/acme/dtu/d1/"))

    def test_gateway_gets_sub_device_wildcards(self) -> None:
        result = PolicyResolver("acme", "gateway").resolve_policy(_request("gw1", "gateway"))

        self.assertIn("iot/acme/gateway/gw1/subdev/+/telemetry", result.acl.publish)
        self.assertIn("iot/acme/gateway/gw1/subdev/+/cmd", result.acl.subscribe)

    def test_validate_topic_permission(self) -> None:
        resolver = PolicyResolver("acme", "gateway")

        self.assertTrue(resolver.validate_topic_permission("iot/acme/gateway/gw1/status", "publish", "gw1"))
        self.assertTrue(
            resolver.validate_topic_permission("iot/acme/gateway/gw1/subdev/c9/telemetry", "publish", "gw1")
        )
        self.assertTrue(
            resolver.validate_topic_permission("iot/acme/gateway/gw1/subdev/c9/cmd", "subscribe", "gw1")
        )
        # another device's exact topic
        self.assertFalse(resolver.validate_topic_permission("iot/acme/gateway/gw2/status", "publish", "gw1"))
        self.assertFalse(resolver.validate_topic_permission("iot/other/gateway/gw1/status", "publish", "gw1"))
        self.assertFalse(resolver.validate_topic_permission("iot/acme/gateway/gw1/cmd", "publish", "gw1"))
        self.assertFalse(resolver.validate_topic_permission("iot/acme/gateway/gw1/status", "delete", "gw1"))
        self.assertFalse(resolver.validate_topic_permission("iot/acme/gateway", "publish", "gw1"))
        self.assertFalse(resolver.validate_topic_permission("iot/acme/gateway/gw1/+", "subscribe", "gw1"))

    def test_deny_patterns_apply_to_every_device_type(self) -> None:
        for device_type in ("sensor", "gateway", "ps-ctrl", "meter"):
            resolver = PolicyResolver("acme", device_type)
            self.assertTrue(resolver.is_denied(f"iot/acme/{device_type}/x1/admin/reset"))
            self.assertTrue(resolver.is_denied(f"iot/acme/{device_type}/x1/debug/log"))
            self.assertFalse(resolver.is_denied(f"iot/acme/{device_type}/x1/telemetry"))

    def test_sub_device_policy(self) -> None:
        result = PolicyResolver("acme", "gateway").generate_sub_device_policy("gw1", "c1", "sensor")

        self.assertEqual(result.topics.telemetry_pub, "iot/acme/gateway/gw1/subdev/c1/telemetry")
        self.assertTrue(result.capabilities.is_low_power)
        self.assertEqual(result.qos_for(result.topics.telemetry_pub).qos, 0)
        self.assertFalse(any("/subdev/+/" in topic for topic in result.acl.publish))

    def test_resolve_is_idempotent(self) -> None:
        resolver = PolicyResolver("acme", "sensor")
        request = _request("s1", "sensor", ["low_power_mode", "temperature_sensor"])

        first = json.dumps(resolver.resolve_policy(request).as_dict(), sort_keys=True)
        second = json.dumps(resolver.resolve_policy(request).as_dict(), sort_keys=True)
        self.assertEqual(first, second)

    def test_device_type_defaults(self) -> None:
        self.assertEqual(PolicyResolver("acme", "sensor").device_type_qos_defaults()["defaultQos"], 0)
        self.assertTrue(PolicyResolver("acme", "dtu").device_type_qos_defaults()["retainStatus"])

    def test_factory_normalizes_types(self) -> None:
        resolvers = PolicyResolverFactory().create_many("acme", ["ps_ctrl", "sensor"])

        self.assertEqual(sorted(resolvers), ["ps-ctrl", "sensor"])
        self.assertEqual(resolvers["ps-ctrl"].device_type, "ps-ctrl")
