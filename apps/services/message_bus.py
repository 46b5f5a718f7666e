"""进程内消息总线，承接协议管理器标准化后的设备消息。"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from apps.telemetry.logging import get_logger


class MessageType(str, Enum):
    TELEMETRY = "telemetry"
    STATUS_CHANGE = "status_change"
    DEVICE_EVENT = "device_event"
    COMMAND_RESPONSE = "command_response"
    OTA_PROGRESS = "ota_progress"
    OTA_STATUS = "ota_status"
    SHADOW_REPORTED = "shadow_reported"
    DEVICE_COMMAND = "device_command"
    SHADOW_DESIRED = "shadow_desired"
    CONFIG_UPDATE = "config_update"


@dataclass(frozen=True)
class StandardMessage:
    """A device message after topic parsing and payload decoding."""

    type: MessageType
    tenant_id: str
    device_type: str
    device_id: str
    topic: str
    payload: Dict[str, Any]
    timestamp: datetime
    protocol: str
    source: str = ""
    gateway_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        body = {
            "type": self.type.value,
            "tenantId": self.tenant_id,
            "deviceType": self.device_type,
            "deviceId": self.device_id,
            "topic": self.topic,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
            "protocol": self.protocol,
            "source": self.source,
        }
        if self.gateway_id:
            body["gatewayId"] = self.gateway_id
        return body


Handler = Callable[[StandardMessage], Union[Awaitable[None], None]]


class MessageBus:
    """按消息类型分发；处理器异常只记录日志，不影响其他订阅者。"""

    def __init__(self) -> None:
        self._handlers: Dict[MessageType, List[Handler]] = {}
        self._catch_all: List[Handler] = []
        self._logger = get_logger("message_bus")

    def subscribe(self, message_type: MessageType, handler: Handler) -> None:
        self._handlers.setdefault(message_type, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        self._catch_all.append(handler)

    def unsubscribe(self, message_type: Optional[MessageType], handler: Handler) -> bool:
        handlers = self._catch_all if message_type is None else self._handlers.get(message_type, [])
        if handler not in handlers:
            return False
        handlers.remove(handler)
        return True

    def handler_count(self, message_type: Optional[MessageType] = None) -> int:
        if message_type is None:
            return len(self._catch_all)
        return len(self._handlers.get(message_type, []))

    async def publish(self, message: StandardMessage) -> int:
        """Deliver ``message``; returns how many handlers completed."""

        delivered = 0
        for handler in [*self._handlers.get(message.type, []), *self._catch_all]:
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self._logger.exception(
                    f"handler failed: type={message.type.value} device={message.device_id}"
                )
                continue
            delivered += 1
        return delivered


__all__ = ["MessageBus", "MessageType", "StandardMessage"]
