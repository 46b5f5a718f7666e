"""协议管理器。

负责持有各协议适配器，把设备上行消息解析为标准消息投递到消息总线，
并把下行消息按协议路由回设备。
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from apps.adapters.base import AdapterStatus, Payload, ProtocolAdapter, ProtocolMessage, ProtocolType
from apps.policy import topics as topic_strategy
from apps.policy.capabilities import detect_capabilities
from apps.policy.errors import PolicyError
from apps.policy.registry import PolicyRegistry
from apps.telemetry.logging import get_logger
from apps.telemetry.metrics import record_dead_letter

from .message_bus import MessageBus, MessageType, StandardMessage

# inbound channel -> message type
CHANNEL_MESSAGE_TYPES: Dict[str, MessageType] = {
    "telemetry": MessageType.TELEMETRY,
    "status": MessageType.STATUS_CHANGE,
    "event": MessageType.DEVICE_EVENT,
    "cmdres": MessageType.COMMAND_RESPONSE,
    "ota/progress": MessageType.OTA_PROGRESS,
    "ota/status": MessageType.OTA_STATUS,
    "shadow/reported": MessageType.SHADOW_REPORTED,
}

# message type -> outbound channel
MESSAGE_CHANNELS: Dict[MessageType, str] = {
    MessageType.DEVICE_COMMAND: "cmd",
    MessageType.SHADOW_DESIRED: "shadow/desired",
    MessageType.CONFIG_UPDATE: "cfg",
    **{message_type: channel for channel, message_type in CHANNEL_MESSAGE_TYPES.items()},
}


def classify(channel: str) -> Optional[MessageType]:
    """Message type for an inbound channel; ``None`` when unclassified."""

    return CHANNEL_MESSAGE_TYPES.get(channel)


def parse_payload(payload: Payload) -> Dict[str, Any]:
    if isinstance(payload, dict):
        return payload
    if isinstance(payload, list):
        return {"data": payload}
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError:
            return {"raw": payload.hex()}
    try:
        value = json.loads(payload)
    except (TypeError, ValueError):
        return {"data": payload}
    if isinstance(value, dict):
        return value
    return {"data": value}


class ProtocolManager:
    """一个协议一个适配器；按注册顺序初始化与关闭。"""

    def __init__(self, bus: MessageBus, registry: Optional[PolicyRegistry] = None) -> None:
        self._bus = bus
        self._registry = registry
        self._adapters: Dict[ProtocolType, ProtocolAdapter] = {}
        self._logger = get_logger("protocol_manager")

    @property
    def bus(self) -> MessageBus:
        return self._bus

    def register_adapter(self, adapter: ProtocolAdapter) -> None:
        protocol = adapter.protocol
        if protocol in self._adapters:
            raise ValueError(f"adapter already registered: {protocol.value}")
        adapter.on("message", self._handle_message)
        self._adapters[protocol] = adapter
        self._logger.info(f"适配器已注册: {protocol.value}")

    async def unregister_adapter(self, protocol: ProtocolType) -> bool:
        adapter = self._adapters.pop(ProtocolType(protocol), None)
        if adapter is None:
            return False
        adapter.off("message", self._handle_message)
        await adapter.shutdown()
        self._logger.info(f"适配器已注销: {adapter.protocol.value}")
        return True

    def get_adapter(self, protocol: ProtocolType) -> Optional[ProtocolAdapter]:
        return self._adapters.get(ProtocolType(protocol))

    def registered_protocols(self) -> List[ProtocolType]:
        return list(self._adapters)

    def adapter_status(self, protocol: ProtocolType) -> Optional[AdapterStatus]:
        adapter = self.get_adapter(protocol)
        return adapter.status if adapter else None

    def all_adapter_status(self) -> Dict[str, Dict[str, Any]]:
        return {protocol.value: adapter.status.as_dict() for protocol, adapter in self._adapters.items()}

    async def initialize(self) -> None:
        """启动所有已注册的适配器；连接失败由适配器自行重试。"""

        for adapter in list(self._adapters.values()):
            await adapter.initialize()
        self._logger.info(f"协议管理器已启动: {[p.value for p in self._adapters]}")

    async def shutdown(self) -> None:
        """按注册顺序关闭，单个失败不影响其余适配器。"""

        for protocol, adapter in list(self._adapters.items()):
            try:
                await adapter.shutdown()
            except Exception:
                self._logger.exception(f"适配器关闭失败: {protocol.value}")
        self._logger.info("协议管理器已关闭所有适配器")

    async def _handle_message(self, message: ProtocolMessage) -> Optional[StandardMessage]:
        topic = message.topic or ""
        parsed = topic_strategy.parse_any(topic)
        if parsed is None:
            record_dead_letter("unparseable_topic")
            self._logger.warning(f"无法解析主题: {topic!r} protocol={message.protocol.value}")
            return None
        message_type = classify(parsed.channel_path)
        if message_type is None:
            record_dead_letter("unclassified_channel")
            self._logger.warning(f"未识别的通道，已丢弃: {topic}")
            return None

        gateway_id = parsed.device_id if parsed.sub_device_id else None
        standard = StandardMessage(
            type=message_type,
            tenant_id=parsed.tenant_id,
            device_type=topic_strategy.normalize_device_type(parsed.device_type),
            device_id=parsed.sub_device_id or parsed.device_id,
            topic=topic,
            payload=parse_payload(message.payload),
            timestamp=message.timestamp,
            protocol=message.protocol.value,
            source=message.source,
            gateway_id=gateway_id,
            metadata=dict(message.metadata),
        )
        await self._bus.publish(standard)
        self._logger.debug(f"消息已处理: {message_type.value} device={standard.device_id}")
        return standard

    async def send_to_device(
        self,
        tenant_id: str,
        device_id: str,
        device_type: str,
        message_type: MessageType,
        payload: Payload,
        protocol: ProtocolType = ProtocolType.MQTT,
        **options: Any,
    ) -> bool:
        """Publish to the device's channel for ``message_type`` over ``protocol``."""

        adapter = self.get_adapter(protocol)
        if adapter is None:
            self._logger.warning(f"协议未注册: {ProtocolType(protocol).value}")
            return False
        channel = MESSAGE_CHANNELS.get(MessageType(message_type), "telemetry")
        prefix = topic_strategy.device_prefix(tenant_id, device_type, device_id)
        topic = f"{prefix}/{channel}"
        for key, value in self._delivery_hints(tenant_id, device_type, device_id, topic).items():
            options.setdefault(key, value)
        delivered = await adapter.publish(topic, payload, **options)
        if not delivered:
            self._logger.warning(f"下行消息未送达: {topic} via {adapter.protocol.value}")
        return delivered

    def _delivery_hints(self, tenant_id: str, device_type: str, device_id: str, topic: str) -> Dict[str, Any]:
        if self._registry is None:
            return {}
        try:
            resolver = self._registry.get_or_create_resolver(tenant_id, device_type)
        except PolicyError as exc:
            self._logger.debug(f"no policy for {tenant_id}/{device_type}: {exc}")
            return {}
        device_topics = topic_strategy.topics(tenant_id, resolver.device_type, device_id)
        capabilities = detect_capabilities((), resolver.device_type)
        for entry in resolver.qos_retain_policy(device_topics, capabilities):
            if entry.topic == topic:
                return {"qos": entry.qos, "retain": entry.retain}
        return {}


__all__ = [
    "CHANNEL_MESSAGE_TYPES",
    "MESSAGE_CHANNELS",
    "ProtocolManager",
    "classify",
    "parse_payload",
]
