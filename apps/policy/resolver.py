"""QoS/retain and ACL derivation for one (tenant, device type)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Tuple

from . import topics as topic_strategy
from .capabilities import DeviceCapabilities, detect_capabilities
from .config import PolicyConfig
from .models import BootstrapRequest
from .patterns import has_wildcard, matches_any, topic_matches
from .topics import SUBDEV_SEGMENT, MqttTopics

PUBLISH = "publish"
SUBSCRIBE = "subscribe"
ACTIONS = (PUBLISH, SUBSCRIBE)

PUBLISH_CHANNELS: Tuple[str, ...] = (
    "telemetry_pub",
    "status_pub",
    "event_pub",
    "cmdres_pub",
    "shadow_reported_pub",
    "ota_progress_pub",
)
SUBSCRIBE_CHANNELS: Tuple[str, ...] = ("cmd_sub", "shadow_desired_sub", "cfg_sub")


@dataclass(frozen=True)
class QosRetainEntry:
    topic: str
    qos: int
    retain: bool
    reason: str

    def as_dict(self) -> Dict[str, Any]:
        return {"topic": self.topic, "qos": self.qos, "retain": self.retain, "reason": self.reason}


@dataclass(frozen=True)
class AclPolicy:
    publish: Tuple[str, ...] = ()
    subscribe: Tuple[str, ...] = ()
    deny: Tuple[str, ...] = ()

    def allowed(self, action: str) -> Tuple[str, ...]:
        if action == PUBLISH:
            return self.publish
        if action == SUBSCRIBE:
            return self.subscribe
        return ()

    def as_dict(self) -> Dict[str, list]:
        return {"publish": list(self.publish), "subscribe": list(self.subscribe), "deny": list(self.deny)}


@dataclass(frozen=True)
class PolicyResult:
    topics: MqttTopics
    qos_retain_policy: Tuple[QosRetainEntry, ...]
    acl: AclPolicy
    capabilities: DeviceCapabilities = field(default_factory=DeviceCapabilities)

    def qos_for(self, topic: str) -> Optional[QosRetainEntry]:
        for entry in self.qos_retain_policy:
            if entry.topic == topic:
                return entry
        return None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "topics": self.topics.as_dict(),
            "qosRetainPolicy": [entry.as_dict() for entry in self.qos_retain_policy],
            "acl": self.acl.as_dict(),
            "capabilities": self.capabilities.as_dict(),
        }


class PolicyResolver:
    """Stateless resolver bound to one tenant, one device type and one config snapshot."""

    def __init__(self, tenant_id: str, device_type: str, config: Optional[PolicyConfig] = None) -> None:
        self.tenant_id = topic_strategy.ensure_segment("tenantId", tenant_id)
        self.device_type = topic_strategy.ensure_segment(
            "deviceType", topic_strategy.normalize_device_type(device_type)
        )
        self.config = config or PolicyConfig()

    def __repr__(self) -> str:
        return f"PolicyResolver(tenant={self.tenant_id!r}, device_type={self.device_type!r})"

    def resolve_policy(self, request: BootstrapRequest, tenant_id: Optional[str] = None) -> PolicyResult:
        """Topics, QoS/retain, ACL and capabilities for the requesting device."""

        tenant = tenant_id or self.tenant_id
        device_topics = topic_strategy.topics(tenant, self.device_type, request.device_id)
        capabilities = detect_capabilities(request.capabilities, self.device_type)
        return PolicyResult(
            topics=device_topics,
            qos_retain_policy=self.qos_retain_policy(device_topics, capabilities),
            acl=self.acl_policy(device_topics, capabilities),
            capabilities=capabilities,
        )

    def generate_sub_device_policy(
        self,
        gateway_id: str,
        sub_device_id: str,
        sub_device_type: str,
        capabilities: Iterable[str] = (),
    ) -> PolicyResult:
        """Policy for a gateway child, computed over the gateway's subdev topics."""

        device_topics = topic_strategy.sub_device_topics(
            self.tenant_id, gateway_id, sub_device_id, sub_device_type
        )
        detected = detect_capabilities(capabilities, sub_device_type)
        return PolicyResult(
            topics=device_topics,
            qos_retain_policy=self.qos_retain_policy(device_topics, detected),
            acl=self.acl_policy(device_topics, detected, include_subdevices=False),
            capabilities=detected,
        )

    def qos_retain_policy(
        self, device_topics: MqttTopics, capabilities: DeviceCapabilities
    ) -> Tuple[QosRetainEntry, ...]:
        rules = self.config.qos
        entries = []
        for key, topic in device_topics.items():
            rule = rules.channels[key]
            if capabilities.is_low_power and key in rules.low_power:
                rule = rules.low_power[key]
            entries.append(QosRetainEntry(topic=topic, qos=rule.qos, retain=rule.retain, reason=rule.reason))
        return tuple(entries)

    def acl_policy(
        self,
        device_topics: MqttTopics,
        capabilities: DeviceCapabilities,
        *,
        include_subdevices: bool = True,
    ) -> AclPolicy:
        publish = [getattr(device_topics, key) for key in PUBLISH_CHANNELS]
        subscribe = [getattr(device_topics, key) for key in SUBSCRIBE_CHANNELS]
        if capabilities.is_gateway and include_subdevices:
            prefix = device_topics.telemetry_pub.rsplit("/", 1)[0]
            acl = self.config.acl
            publish.extend(f"{prefix}/{SUBDEV_SEGMENT}/+/{channel}" for channel in acl.gateway_subdevice_publish)
            subscribe.extend(
                f"{prefix}/{SUBDEV_SEGMENT}/+/{channel}" for channel in acl.gateway_subdevice_subscribe
            )
        return AclPolicy(publish=tuple(publish), subscribe=tuple(subscribe), deny=tuple(self.config.acl.deny))

    def validate_topic_permission(self, topic: str, action: str, device_id: str) -> bool:
        """Is ``topic`` in this device's own allow-list for ``action``?

        Deny patterns are not consulted; the broker webhook applies them.
        """

        if action not in ACTIONS:
            return False
        if topic_strategy.parse_any(topic) is None or has_wildcard(topic):
            return False
        if not topic_strategy.is_valid_segment(device_id):
            return False
        device_topics = topic_strategy.topics(self.tenant_id, self.device_type, device_id)
        capabilities = detect_capabilities((), self.device_type)
        allowed = self.acl_policy(device_topics, capabilities).allowed(action)
        if topic in allowed:
            return True
        return any(topic_matches(pattern, topic) for pattern in allowed if has_wildcard(pattern))

    def is_denied(self, topic: str) -> bool:
        return matches_any(self.config.acl.deny, topic)

    def device_type_qos_defaults(self) -> Dict[str, Any]:
        if self.device_type == "sensor":
            return {"defaultQos": 0, "retainStatus": False, "retainConfig": False}
        return {"defaultQos": 1, "retainStatus": True, "retainConfig": True}


class PolicyResolverFactory:
    """Builds resolvers for one config snapshot."""

    def __init__(self, config: Optional[PolicyConfig] = None) -> None:
        self.config = config or PolicyConfig()

    def create(self, tenant_id: str, device_type: str) -> PolicyResolver:
        return PolicyResolver(tenant_id, device_type, self.config)

    def create_many(self, tenant_id: str, device_types: Iterable[str]) -> Dict[str, PolicyResolver]:
        resolvers: Dict[str, PolicyResolver] = {}
        for device_type in device_types:
            resolver = self.create(tenant_id, device_type)
            resolvers[resolver.device_type] = resolver
        return resolvers


__all__ = [
    "ACTIONS",
    "AclPolicy",
    "PUBLISH",
    "PolicyResolver",
    "PolicyResolverFactory",
    "PolicyResult",
    "QosRetainEntry",
    "SUBSCRIBE",
]
