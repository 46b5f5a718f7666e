"""设备能力识别（纯函数）。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable

from .topics import GATEWAY_TYPE, normalize_device_type

LOW_POWER_CAPABILITY = "low_power_mode"
LOW_POWER_DEVICE_TYPES = frozenset({"sensor"})
SENSOR_CAPABILITIES = frozenset(
    {
        "temperature_sensor",
        "humidity_sensor",
        "voltage_sensor",
        "current_sensor",
    }
)


@dataclass(frozen=True)
class DeviceCapabilities:
    is_low_power: bool = False
    has_sensors: bool = False
    is_gateway: bool = False
    supports_ota: bool = True
    supports_shadow: bool = True

    def as_dict(self) -> Dict[str, bool]:
        return {
            "isLowPower": self.is_low_power,
            "hasSensors": self.has_sensors,
            "isGateway": self.is_gateway,
            "supportsOta": self.supports_ota,
            "supportsShadow": self.supports_shadow,
        }


def detect_capabilities(capability_names: Iterable[str], device_type: str) -> DeviceCapabilities:
    """Classify a device from its declared capability names and type."""

    names = frozenset(capability_names or ())
    device_type = normalize_device_type(device_type)
    return DeviceCapabilities(
        is_low_power=LOW_POWER_CAPABILITY in names or device_type in LOW_POWER_DEVICE_TYPES,
        has_sensors=bool(names & SENSOR_CAPABILITIES),
        is_gateway=device_type == GATEWAY_TYPE,
    )


__all__ = ["DeviceCapabilities", "SENSOR_CAPABILITIES", "detect_capabilities"]
