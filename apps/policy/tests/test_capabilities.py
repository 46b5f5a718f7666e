from __future__ import annotations

from django.test import SimpleTestCase

from apps.policy.capabilities import DeviceCapabilities, detect_capabilities


class CapabilityDetectorTests(SimpleTestCase):
    def test_low_power_from_capability_or_sensor_type(self) -> None:
        self.assertTrue(detect_capabilities(["low_power_mode"], "dtu").is_low_power)
        self.assertTrue(detect_capabilities([], "sensor").is_low_power)
        self.assertFalse(detect_capabilities(["relay"], "dtu").is_low_power)

    def test_gateway_and_sensor_flags(self) -> None:
        caps = detect_capabilities(["temperature_sensor"], "gateway")

        self.assertTrue(caps.is_gateway)
        self.assertTrue(caps.has_sensors)
        self.assertTrue(caps.supports_ota)
        self.assertTrue(caps.supports_shadow)

    def test_is_deterministic(self) -> None:
        self.assertEqual(
            detect_capabilities(["voltage_sensor", "low_power_mode"], "ps_ctrl"),
            DeviceCapabilities(is_low_power=True, has_sensors=True, is_gateway=False),
        )
        self.assertEqual(detect_capabilities(None, "dtu").as_dict()["isLowPower"], False)
