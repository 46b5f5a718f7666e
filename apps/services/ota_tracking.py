"""记录设备上报的 OTA 完成状态，供升级节流使用。"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from apps.policy.ota import UpgradeHistory

from .message_bus import MessageBus, MessageType, StandardMessage

logger = logging.getLogger(__name__)

SUCCESS_STATES = frozenset({"success", "succeeded", "completed", "done"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OtaStatusRecorder:
    """Subscribes to ``OTA_STATUS`` and records finished upgrades."""

    def __init__(self, history: UpgradeHistory, clock: Callable[[], datetime] = _utcnow) -> None:
        self._history = history
        self._clock = clock

    def attach(self, bus: MessageBus) -> None:
        bus.subscribe(MessageType.OTA_STATUS, self.handle)

    def handle(self, message: StandardMessage) -> bool:
        state = str(message.payload.get("status") or message.payload.get("state") or "").lower()
        if state not in SUCCESS_STATES:
            return False
        self._history.record_upgrade(message.tenant_id, message.device_id, self._clock())
        logger.info(
            "OTA completed: %s/%s version=%s",
            message.tenant_id,
            message.device_id,
            message.payload.get("version"),
        )
        return True


__all__ = ["OtaStatusRecorder", "SUCCESS_STATES"]
