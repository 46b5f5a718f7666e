"""设备升级记录仓储（内存实现）。

The durable store lives outside this service; anything implementing
``last_upgrade_at`` / ``record_upgrade`` can be passed to ``OtaStrategy``.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, Optional, Tuple


class InMemoryUpgradeHistory:
    """按 (tenant, device) 保存最近一次升级完成时间。"""

    def __init__(self) -> None:
        self._records: Dict[Tuple[str, str], datetime] = {}
        self._lock = threading.Lock()

    def last_upgrade_at(self, tenant_id: str, device_id: str) -> Optional[datetime]:
        return self._records.get((tenant_id, device_id))

    def record_upgrade(self, tenant_id: str, device_id: str, at: datetime) -> None:
        with self._lock:
            previous = self._records.get((tenant_id, device_id))
            if previous is None or at > previous:
                self._records[(tenant_id, device_id)] = at


__all__ = ["InMemoryUpgradeHistory"]
