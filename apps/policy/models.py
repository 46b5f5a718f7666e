"""Validated device self-description passed to the policy engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

FIRMWARE_CHANNELS = ("stable", "beta", "dev")


@dataclass(frozen=True)
class FirmwareInfo:
    current: str
    build: str
    min_required: str
    channel: str = "stable"


@dataclass(frozen=True)
class HardwareInfo:
    version: str
    serial: str
    description: Optional[str] = None


@dataclass(frozen=True)
class BootstrapRequest:
    device_id: str
    mac: str
    device_type: str
    tenant_id: Optional[str] = None
    firmware: Optional[FirmwareInfo] = None
    hardware: Optional[HardwareInfo] = None
    capabilities: Tuple[str, ...] = field(default_factory=tuple)
    timestamp: Optional[int] = None
    message_id: Optional[str] = None
    signature: Optional[str] = None


__all__ = ["BootstrapRequest", "FIRMWARE_CHANNELS", "FirmwareInfo", "HardwareInfo"]
