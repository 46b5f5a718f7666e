"""Policy tables loaded from YAML and validated with pydantic.

Every model carries defaults, so ``PolicyConfig()`` is a complete policy on its
own; the bundled ``policy.yaml`` spells the same values out for operators.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import PolicyError
from .models import FIRMWARE_CHANNELS
from .topics import TOPIC_CHANNELS, normalize_device_type

logger = logging.getLogger(__name__)

DEFAULT_POLICY_PATH = Path(__file__).with_name("policy.yaml")

LOW_POWER_CHANNELS = frozenset({"telemetry_pub", "shadow_reported_pub"})
_TIME_WINDOW_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d-([01]\d|2[0-3]):[0-5]\d$")


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class QosRule(_Frozen):
    qos: int = Field(1, ge=0, le=2)
    retain: bool = False
    reason: str


def _default_channel_rules() -> Dict[str, QosRule]:
    return {
        "telemetry_pub": QosRule(qos=1, retain=False, reason="standard_telemetry"),
        "status_pub": QosRule(qos=1, retain=True, reason="status_persistence"),
        "event_pub": QosRule(qos=1, retain=False, reason="event_reliability"),
        "cmd_sub": QosRule(qos=1, retain=False, reason="command_reliability"),
        "cmdres_pub": QosRule(qos=1, retain=False, reason="response_reliability"),
        "shadow_desired_sub": QosRule(qos=1, retain=True, reason="shadow_desired_persistence"),
        "shadow_reported_pub": QosRule(qos=1, retain=False, reason="standard_shadow"),
        "cfg_sub": QosRule(qos=1, retain=True, reason="config_persistence"),
        "ota_progress_pub": QosRule(qos=1, retain=False, reason="ota_progress_reliability"),
    }


def _default_low_power_rules() -> Dict[str, QosRule]:
    return {
        "telemetry_pub": QosRule(qos=0, retain=False, reason="low_power_optimization"),
        "shadow_reported_pub": QosRule(qos=0, retain=False, reason="low_power_shadow"),
    }


class QosConfig(_Frozen):
    channels: Dict[str, QosRule] = Field(default_factory=_default_channel_rules)
    low_power: Dict[str, QosRule] = Field(default_factory=_default_low_power_rules)

    @field_validator("channels")
    @classmethod
    def _all_channels(cls, value: Dict[str, QosRule]) -> Dict[str, QosRule]:
        expected = {key for key, _ in TOPIC_CHANNELS}
        missing = expected - set(value)
        unknown = set(value) - expected
        if missing or unknown:
            raise ValueError(f"qos channels mismatch; missing={sorted(missing)} unknown={sorted(unknown)}")
        return value

    @field_validator("low_power")
    @classmethod
    def _low_power_scope(cls, value: Dict[str, QosRule]) -> Dict[str, QosRule]:
        unsupported = set(value) - LOW_POWER_CHANNELS
        if unsupported:
            raise ValueError(f"low_power overrides only apply to {sorted(LOW_POWER_CHANNELS)}")
        return value


class AclConfig(_Frozen):
    deny: List[str] = Field(
        default_factory=lambda: ["iot/+/+/+/admin/+", "iot/+/+/+/system/+", "iot/+/+/+/debug/+"]
    )
    gateway_subdevice_publish: List[str] = Field(default_factory=lambda: ["telemetry", "status", "event"])
    gateway_subdevice_subscribe: List[str] = Field(default_factory=lambda: ["cmd"])


class ChannelPolicy(_Frozen):
    upgrade_interval_hours: float = Field(24, ge=0)


class TenantOtaPolicy(_Frozen):
    allowed_channels: List[str] = Field(default_factory=lambda: ["stable"])
    force: bool = False

    @field_validator("allowed_channels")
    @classmethod
    def _known_channels(cls, value: List[str]) -> List[str]:
        unknown = set(value) - set(FIRMWARE_CHANNELS)
        if unknown:
            raise ValueError(f"unknown firmware channels: {sorted(unknown)}")
        return value


class FirmwareRelease(_Frozen):
    version: str
    build: str
    url: str
    checksum: str
    size: int = Field(..., gt=0)
    release_notes: str = ""


def _default_releases() -> Dict[str, List[FirmwareRelease]]:
    def release(version: str, build: str, notes: str) -> FirmwareRelease:
        return FirmwareRelease(
            version=version,
            build=build,
            url=f"https://firmware.example.com/{version}/{build}.bin",
            checksum=f"sha256:{build}",
            size=1024000,
            release_notes=notes,
        )

    return {
        "stable": [release("1.2.4", "20240102.001", "Stable maintenance release")],
        "beta": [release("1.3.0-beta.1", "20240102.002", "Beta preview")],
        "dev": [release("1.3.0-dev.1", "20240102.003", "Development build")],
    }


class OtaConstraints(_Frozen):
    min_battery_pct: int = Field(20, ge=0, le=100)
    network: str = "wifi"
    time_window: str = "02:00-06:00"

    @field_validator("time_window")
    @classmethod
    def _window_format(cls, value: str) -> str:
        if not _TIME_WINDOW_RE.match(value):
            raise ValueError("time_window must look like HH:MM-HH:MM")
        return value


class OtaRetry(_Frozen):
    base_ms: int = 5000
    max_ms: int = 60000


class OtaConfig(_Frozen):
    channels: Dict[str, ChannelPolicy] = Field(
        default_factory=lambda: {
            "stable": ChannelPolicy(upgrade_interval_hours=24),
            "beta": ChannelPolicy(upgrade_interval_hours=12),
            "dev": ChannelPolicy(upgrade_interval_hours=6),
        }
    )
    tenants: Dict[str, TenantOtaPolicy] = Field(
        default_factory=lambda: {"default": TenantOtaPolicy(allowed_channels=["stable"])}
    )
    releases: Dict[str, List[FirmwareRelease]] = Field(default_factory=_default_releases)
    constraints: OtaConstraints = Field(default_factory=OtaConstraints)
    retry: OtaRetry = Field(default_factory=OtaRetry)

    @field_validator("channels", "releases")
    @classmethod
    def _channel_keys(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(value) - set(FIRMWARE_CHANNELS)
        if unknown:
            raise ValueError(f"unknown firmware channels: {sorted(unknown)}")
        return value


def _default_shadow() -> Dict[str, Dict[str, Any]]:
    return {
        "default": {
            "reporting": {"heartbeatMs": 60000},
            "sensors": {"samplingMs": 30000},
            "thresholds": {"voltage": {"min": 3.0, "max": 5.0}, "current": {"min": 0, "max": 2.0}},
            "features": {"alarmEnabled": True, "autoRebootDays": 7},
        }
    }


def _default_policies() -> Dict[str, Dict[str, Any]]:
    return {
        "default": {
            "ingestLimits": {"telemetryQps": 10, "statusQps": 1},
            "retention": {"telemetryDays": 30, "statusDays": 7, "eventsDays": 14},
        }
    }


class PolicyConfig(_Frozen):
    """One immutable snapshot of every policy table."""

    version: str = "1.0.0"
    tenants: List[str] = Field(default_factory=lambda: ["default"])
    strict_tenants: bool = False
    device_types: List[str] = Field(
        default_factory=lambda: ["ps-ctrl", "dtu", "rtu", "ftu", "sensor", "gateway"]
    )
    allow_unknown_device_types: bool = True
    qos: QosConfig = Field(default_factory=QosConfig)
    acl: AclConfig = Field(default_factory=AclConfig)
    ota: OtaConfig = Field(default_factory=OtaConfig)
    shadow: Dict[str, Dict[str, Any]] = Field(default_factory=_default_shadow)
    policies: Dict[str, Dict[str, Any]] = Field(default_factory=_default_policies)

    @field_validator("device_types")
    @classmethod
    def _normalize_types(cls, value: List[str]) -> List[str]:
        return list(dict.fromkeys(normalize_device_type(item) for item in value))

    def is_known_tenant(self, tenant_id: str) -> bool:
        return not self.strict_tenants or tenant_id in self.tenants

    def is_known_device_type(self, device_type: str) -> bool:
        return self.allow_unknown_device_types or normalize_device_type(device_type) in self.device_types

    def shadow_for(self, device_type: str) -> Dict[str, Any]:
        return self._layered(self.shadow, normalize_device_type(device_type))

    def policies_for(self, tenant_id: str) -> Dict[str, Any]:
        return self._layered(self.policies, tenant_id)

    @staticmethod
    def _layered(table: Dict[str, Dict[str, Any]], key: str) -> Dict[str, Any]:
        merged: Dict[str, Any] = dict(table.get("default", {}))
        merged.update(table.get(key, {}))
        return merged


class PolicyConfigLoader:
    """读取并校验策略 YAML。"""

    def __init__(self, path: Union[str, Path, None] = None) -> None:
        self.path = Path(path) if path else DEFAULT_POLICY_PATH

    def load(self) -> PolicyConfig:
        try:
            raw = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise PolicyError(f"cannot read policy config {self.path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise PolicyError(f"policy config {self.path} must be a mapping")
        try:
            config = PolicyConfig.model_validate(raw)
        except ValidationError as exc:
            raise PolicyError(f"invalid policy config {self.path}: {exc}") from exc
        logger.info("Loaded policy config %s version=%s", self.path, config.version)
        return config


class StaticConfigLoader:
    """Loader that always returns the given snapshot; used when no file is involved."""

    def __init__(self, config: Optional[PolicyConfig] = None) -> None:
        self.config = config or PolicyConfig()

    def load(self) -> PolicyConfig:
        return self.config


__all__ = [
    "AclConfig",
    "ChannelPolicy",
    "DEFAULT_POLICY_PATH",
    "FirmwareRelease",
    "OtaConfig",
    "OtaConstraints",
    "PolicyConfig",
    "PolicyConfigLoader",
    "QosConfig",
    "QosRule",
    "StaticConfigLoader",
    "TenantOtaPolicy",
]
