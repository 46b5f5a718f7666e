"""设备引导接口的 Schema。

Field names follow the device wire format (camelCase).
"""

from __future__ import annotations

import re
import time
from typing import Any, Dict, List, Literal, Optional

from ninja import Schema
from pydantic import Field, field_validator

from apps.policy.models import BootstrapRequest, FirmwareInfo, HardwareInfo
from apps.policy.topics import is_valid_segment, normalize_device_type

MAC_PATTERN = re.compile(r"^([0-9A-Fa-f]{2}[:-]){5}[0-9A-Fa-f]{2}$")
HEX_PATTERN = re.compile(r"^[0-9a-fA-F]+$")
MAX_CLOCK_SKEW_MS = 30_000


class FirmwareSchema(Schema):
    current: str = Field(..., min_length=1)
    build: str = Field(..., min_length=1)
    minRequired: str = Field(..., min_length=1)
    channel: Literal["stable", "beta", "dev"] = "stable"


class HardwareSchema(Schema):
    version: str = Field(..., min_length=1)
    serial: str = Field(..., min_length=1)
    description: Optional[str] = None


class CapabilitySchema(Schema):
    name: str = Field(..., min_length=1)
    version: Optional[str] = None
    params: Optional[Dict[str, Any]] = None


class BootstrapRequestSchema(Schema):
    """设备自描述请求体。"""

    deviceId: str = Field(..., min_length=1, max_length=64)
    mac: str
    deviceType: str = Field(..., min_length=1)
    tenantId: Optional[str] = None
    firmware: Optional[FirmwareSchema] = None
    hardware: Optional[HardwareSchema] = None
    capabilities: List[CapabilitySchema] = Field(default_factory=list)
    timestamp: Optional[int] = None
    messageId: Optional[str] = Field(None, min_length=1)
    signature: Optional[str] = None

    @field_validator("deviceId", "tenantId")
    @classmethod
    def _segment(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not is_valid_segment(value):
            raise ValueError("only letters, digits, '.' and '-' are allowed")
        return value

    @field_validator("mac")
    @classmethod
    def _mac(cls, value: str) -> str:
        if not MAC_PATTERN.match(value):
            raise ValueError("MAC must look like AA:BB:CC:DD:EE:FF")
        return value.upper()

    @field_validator("deviceType")
    @classmethod
    def _device_type(cls, value: str) -> str:
        normalized = normalize_device_type(value)
        if not is_valid_segment(normalized):
            raise ValueError("unsupported device type format")
        return normalized

    @field_validator("capabilities", mode="before")
    @classmethod
    def _capability_names(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [{"name": item} if isinstance(item, str) else item for item in value]
        return value

    @field_validator("timestamp")
    @classmethod
    def _timestamp(cls, value: Optional[int]) -> Optional[int]:
        if value is None:
            return value
        if value <= 0:
            raise ValueError("timestamp must be positive")
        if value > int(time.time() * 1000) + MAX_CLOCK_SKEW_MS:
            raise ValueError("timestamp is in the future")
        return value

    @field_validator("signature")
    @classmethod
    def _signature(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        if len(value) % 2 or not HEX_PATTERN.match(value):
            raise ValueError("signature must be an even-length hex string")
        return value.lower()

    def to_domain(self, tenant_id: str) -> BootstrapRequest:
        firmware = None
        if self.firmware is not None:
            firmware = FirmwareInfo(
                current=self.firmware.current,
                build=self.firmware.build,
                min_required=self.firmware.minRequired,
                channel=self.firmware.channel,
            )
        hardware = None
        if self.hardware is not None:
            hardware = HardwareInfo(
                version=self.hardware.version,
                serial=self.hardware.serial,
                description=self.hardware.description,
            )
        return BootstrapRequest(
            device_id=self.deviceId,
            mac=self.mac,
            device_type=self.deviceType,
            tenant_id=tenant_id,
            firmware=firmware,
            hardware=hardware,
            capabilities=tuple(item.name for item in self.capabilities),
            timestamp=self.timestamp,
            message_id=self.messageId,
            signature=self.signature,
        )


class QosRetainSchema(Schema):
    topic: str
    qos: int
    retain: bool
    reason: str


class AclSchema(Schema):
    publish: List[str]
    subscribe: List[str]
    deny: List[str]


class MqttConfigSchema(Schema):
    brokers: List[Dict[str, Any]]
    clientId: str
    username: str
    password: str
    passwordExpiresAt: int
    keepalive: int
    cleanStart: bool
    sessionExpiry: int
    tls: Dict[str, Any]
    lwt: Dict[str, Any]
    topics: Dict[str, str]
    qosRetainPolicy: List[QosRetainSchema]
    acl: AclSchema
    backoff: Dict[str, Any]


class BootstrapData(Schema):
    cfg: Dict[str, Any]
    mqtt: MqttConfigSchema
    ota: Dict[str, Any]
    shadowDesired: Dict[str, Any]
    policies: Dict[str, Any]
    serverTime: Dict[str, Any]
    websocket: Optional[Dict[str, Any]] = None


class BootstrapResponse(Schema):
    success: Literal[True] = True
    data: BootstrapData


class FieldErrorSchema(Schema):
    field: str
    message: str


class ApiErrorSchema(Schema):
    success: Literal[False] = False
    error_code: str
    message: str
    errors: Optional[List[FieldErrorSchema]] = None


__all__ = [
    "ApiErrorSchema",
    "BootstrapData",
    "BootstrapRequestSchema",
    "BootstrapResponse",
    "MqttConfigSchema",
]
