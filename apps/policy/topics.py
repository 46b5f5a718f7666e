"""Canonical topic layout: ``iot/{tenant}/{deviceType}/{deviceId}/{channel}[/{sub}]``."""

from __future__ import annotations

import re
from dataclasses import dataclass, fields
from typing import Dict, Iterator, List, Optional, Tuple

from .errors import InvalidTopicSegment

TOPIC_ROOT = "iot"
SUBDEV_SEGMENT = "subdev"
GATEWAY_TYPE = "gateway"

# device type aliases -> canonical name
DEVICE_TYPE_MAPPING: Dict[str, str] = {
    "ps-ctrl": "ps-ctrl",
    "ps_ctrl": "ps-ctrl",
    "powersafe": "ps-ctrl",
    "dtu": "dtu",
    "rtu": "rtu",
    "ftu": "ftu",
    "sensor": "sensor",
    "gateway": "gateway",
}

# MqttTopics field -> channel path
TOPIC_CHANNELS: Tuple[Tuple[str, str], ...] = (
    ("telemetry_pub", "telemetry"),
    ("status_pub", "status"),
    ("event_pub", "event"),
    ("cmd_sub", "cmd"),
    ("cmdres_pub", "cmdres"),
    ("shadow_desired_sub", "shadow/desired"),
    ("shadow_reported_pub", "shadow/reported"),
    ("cfg_sub", "cfg"),
    ("ota_progress_pub", "ota/progress"),
)

RESERVED_CHANNELS = frozenset(
    {
        "telemetry",
        "status",
        "event",
        "cmd",
        "cmdres",
        "cfg",
        "ota/progress",
        "ota/status",
        "shadow/desired",
        "shadow/reported",
    }
)

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9.-]{0,63}$")
_TOPIC_RE = re.compile(r"^iot/([^/]+)/([^/]+)/([^/]+)/([^/]+)(?:/([^/]+))?$")
_SUBDEV_TOPIC_RE = re.compile(r"^iot/([^/]+)/([^/]+)/([^/]+)/subdev/([^/]+)/([^/]+)(?:/([^/]+))?$")


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


@dataclass(frozen=True)
class MqttTopics:
    """The nine topics a device publishes or subscribes to."""

    telemetry_pub: str
    status_pub: str
    event_pub: str
    cmd_sub: str
    cmdres_pub: str
    shadow_desired_sub: str
    shadow_reported_pub: str
    cfg_sub: str
    ota_progress_pub: str

    def items(self) -> Iterator[Tuple[str, str]]:
        for item in fields(self):
            yield item.name, getattr(self, item.name)

    def all(self) -> List[str]:
        return [topic for _, topic in self.items()]

    def as_dict(self) -> Dict[str, str]:
        return {_camel(key): topic for key, topic in self.items()}


@dataclass(frozen=True)
class ParsedTopic:
    tenant_id: str
    device_type: str
    device_id: str
    channel: str
    subchannel: Optional[str] = None
    sub_device_id: Optional[str] = None

    @property
    def channel_path(self) -> str:
        """``ota/progress`` style channel name."""

        if self.subchannel:
            return f"{self.channel}/{self.subchannel}"
        return self.channel


def normalize_device_type(device_type: str) -> str:
    """Map aliases to canonical names; unknown types pass through lower-cased."""

    lowered = (device_type or "").strip().lower()
    return DEVICE_TYPE_MAPPING.get(lowered, lowered)


def is_valid_segment(value: object) -> bool:
    return isinstance(value, str) and bool(_SEGMENT_RE.match(value))


def ensure_segment(field: str, value: str) -> str:
    if not is_valid_segment(value):
        raise InvalidTopicSegment(field, str(value))
    return value


def _build(prefix: str) -> MqttTopics:
    return MqttTopics(**{key: f"{prefix}/{channel}" for key, channel in TOPIC_CHANNELS})


def device_prefix(tenant_id: str, device_type: str, device_id: str) -> str:
    ensure_segment("tenantId", tenant_id)
    device_type = ensure_segment("deviceType", normalize_device_type(device_type))
    ensure_segment("deviceId", device_id)
    return f"{TOPIC_ROOT}/{tenant_id}/{device_type}/{device_id}"


def topics(tenant_id: str, device_type: str, device_id: str) -> MqttTopics:
    """Build the canonical topic set for one device."""

    return _build(device_prefix(tenant_id, device_type, device_id))


def sub_device_topics(tenant_id: str, gateway_id: str, sub_id: str, sub_type: str) -> MqttTopics:
    """Topics of a gateway child device, nested under the gateway's prefix.

    ``sub_type`` is validated but does not appear in the topic; the gateway
    owns the namespace.
    """

    ensure_segment("subDeviceType", normalize_device_type(sub_type))
    ensure_segment("subDeviceId", sub_id)
    prefix = device_prefix(tenant_id, GATEWAY_TYPE, gateway_id)
    return _build(f"{prefix}/{SUBDEV_SEGMENT}/{sub_id}")


def parse(topic: str) -> Optional[ParsedTopic]:
    """Parse a device topic; ``None`` for anything that is not 4 or 5 segments after ``iot``."""

    if not isinstance(topic, str):
        return None
    match = _TOPIC_RE.match(topic)
    if not match:
        return None
    tenant_id, device_type, device_id, channel, subchannel = match.groups()
    return ParsedTopic(tenant_id, device_type, device_id, channel, subchannel)


def parse_sub_device(topic: str) -> Optional[ParsedTopic]:
    """Parse ``iot/<t>/<dt>/<gw>/subdev/<sub>/<ch>[/<sub>]``."""

    if not isinstance(topic, str):
        return None
    match = _SUBDEV_TOPIC_RE.match(topic)
    if not match:
        return None
    tenant_id, device_type, gateway_id, sub_id, channel, subchannel = match.groups()
    return ParsedTopic(tenant_id, device_type, gateway_id, channel, subchannel, sub_device_id=sub_id)


def parse_any(topic: str) -> Optional[ParsedTopic]:
    return parse(topic) or parse_sub_device(topic)


def validate_topic_ownership(topic: str, tenant_id: str, device_type: str, device_id: str) -> bool:
    """A topic belongs to a device only if tenant, type and id all match exactly."""

    parsed = parse(topic)
    if parsed is None:
        return False
    return (
        parsed.tenant_id == tenant_id
        and parsed.device_type == normalize_device_type(device_type)
        and parsed.device_id == device_id
    )


def wildcard_patterns(tenant_id: str, device_type: Optional[str] = None) -> Dict[str, str]:
    """Broker-side subscription patterns covering a tenant (or one device type)."""

    ensure_segment("tenantId", tenant_id)
    type_segment = "+"
    if device_type:
        type_segment = ensure_segment("deviceType", normalize_device_type(device_type))
    prefix = f"{TOPIC_ROOT}/{tenant_id}/{type_segment}/+"
    return {
        "all_telemetry": f"{prefix}/telemetry",
        "all_status": f"{prefix}/status",
        "all_events": f"{prefix}/event",
        "all_command_responses": f"{prefix}/cmdres",
        "all_shadow_reported": f"{prefix}/shadow/reported",
        "all_ota_progress": f"{prefix}/ota/progress",
        "all_subdevices": f"{prefix}/{SUBDEV_SEGMENT}/#",
    }


def supported_device_types() -> List[str]:
    return sorted(set(DEVICE_TYPE_MAPPING.values()))


def is_device_type_supported(device_type: str) -> bool:
    return normalize_device_type(device_type) in DEVICE_TYPE_MAPPING.values()


__all__ = [
    "DEVICE_TYPE_MAPPING",
    "MqttTopics",
    "ParsedTopic",
    "RESERVED_CHANNELS",
    "TOPIC_CHANNELS",
    "is_device_type_supported",
    "normalize_device_type",
    "parse",
    "parse_any",
    "parse_sub_device",
    "sub_device_topics",
    "supported_device_types",
    "topics",
    "validate_topic_ownership",
    "wildcard_patterns",
]
