from __future__ import annotations

import tempfile
from pathlib import Path

from django.test import SimpleTestCase
from pydantic import ValidationError

from apps.policy.config import DEFAULT_POLICY_PATH, PolicyConfig, PolicyConfigLoader, QosConfig, QosRule
from apps.policy.errors import PolicyError


class PolicyConfigLoaderTests(SimpleTestCase):
    def _write(self, text: str) -> Path:
        handle = tempfile.NamedTemporaryFile("w", suffix=".yaml", delete=False, encoding="utf-8")
        with handle:
            handle.write(text)
        self.addCleanup(Path(handle.name).unlink)
        return Path(handle.name)

    def test_bundled_policy_matches_defaults(self) -> None:
        config = PolicyConfigLoader(DEFAULT_POLICY_PATH).load()
        defaults = PolicyConfig()

        self.assertEqual(config.qos, defaults.qos)
        self.assertEqual(config.acl, defaults.acl)
        self.assertEqual(config.ota.tenants["default"].allowed_channels, ["stable"])
        self.assertIn("sensor", config.device_types)

    def test_partial_file_uses_defaults(self) -> None:
        path = self._write('version: "3.1"\ndevice_types: [PS_CTRL, sensor]\n')
        config = PolicyConfigLoader(path).load()

        self.assertEqual(config.version, "3.1")
        self.assertEqual(config.device_types, ["ps-ctrl", "sensor"])
        self.assertEqual(config.qos.channels["status_pub"].qos, 1)

    def test_invalid_files_raise_policy_error(self) -> None:
        with self.assertRaises(PolicyError):
            PolicyConfigLoader(self._write("version: [unclosed\n")).load()
        with self.assertRaises(PolicyError):
            PolicyConfigLoader(self._write("- just\n- a list\n")).load()
        with self.assertRaises(PolicyError):
            PolicyConfigLoader(self._write("unknown_section: 1\n")).load()
        with self.assertRaises(PolicyError):
            PolicyConfigLoader(Path("/nonexistent/policy.yaml")).load()

    def test_unsupported_ota_rollout_keys_are_rejected(self) -> None:
        with self.assertRaises(PolicyError):
            PolicyConfigLoader(self._write("ota:\n  tenants:\n    acme:\n      canary: {percentage: 10}\n")).load()
        with self.assertRaises(PolicyError):
            PolicyConfigLoader(self._write("ota:\n  channels:\n    stable: {allow_beta: true}\n")).load()
        config = PolicyConfigLoader(self._write("ota:\n  channels:\n    stable: {upgrade_interval_hours: 2}\n")).load()
        self.assertEqual(config.ota.channels["stable"].upgrade_interval_hours, 2)

    def test_qos_tables_are_validated(self) -> None:
        with self.assertRaises(ValidationError):
            QosConfig(channels={"telemetry_pub": QosRule(qos=1, retain=False, reason="x")})
        with self.assertRaises(ValidationError):
            QosConfig(low_power={"status_pub": QosRule(qos=0, retain=False, reason="x")})

    def test_layered_lookups(self) -> None:
        config = PolicyConfig(
            shadow={"default": {"a": 1, "b": 1}, "sensor": {"b": 2}},
            policies={"default": {"limit": 1}, "acme": {"limit": 5}},
        )

        self.assertEqual(config.shadow_for("sensor"), {"a": 1, "b": 2})
        self.assertEqual(config.shadow_for("dtu"), {"a": 1, "b": 1})
        self.assertEqual(config.policies_for("acme"), {"limit": 5})
