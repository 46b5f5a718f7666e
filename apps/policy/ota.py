"""OTA 升级决策。

Decisions are computed per bootstrap call and never cached: they depend on the
device's current firmware, the tenant's channel policy and the time since the
last recorded upgrade.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from .config import FirmwareRelease, PolicyConfig
from .models import BootstrapRequest

logger = logging.getLogger(__name__)

FORCE_MARKERS = ("security", "critical")
CHANNEL_PRIORITY = {"dev": "low", "beta": "medium", "stable": "high"}
PRIORITY_CRITICAL = "critical"

_VERSION_RE = re.compile(r"^v?(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:[-+](.+))?$")


class UpgradeHistory(Protocol):
    """Per-device record of the last completed upgrade."""

    def last_upgrade_at(self, tenant_id: str, device_id: str) -> Optional[datetime]:
        ...

    def record_upgrade(self, tenant_id: str, device_id: str, at: datetime) -> None:
        ...


def _pre_release_key(pre: str) -> Tuple[Tuple[int, int, str], ...]:
    # 数字段按数值比较，且排在字母段之前 (beta.2 < beta.10 < beta.rc)
    return tuple((0, int(part), "") if part.isdigit() else (1, 0, part) for part in pre.split("."))


def version_key(version: str) -> Tuple[Tuple[int, int, int], int, Tuple[Tuple[int, int, str], ...]]:
    """Sort key: numeric core first, pre-releases before the matching release."""

    match = _VERSION_RE.match((version or "").strip())
    if not match:
        return (0, 0, 0), 0, _pre_release_key(version or "")
    major, minor, patch, pre = match.groups()
    core = (int(major), int(minor or 0), int(patch or 0))
    return core, 0 if pre else 1, _pre_release_key(pre) if pre else ()


@dataclass(frozen=True)
class TargetFirmware:
    version: str
    build: str
    channel: str
    url: str
    checksum: str
    size: int
    force: int
    constraints: Dict[str, Any]
    release_notes: str = ""

    def as_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "build": self.build,
            "channel": self.channel,
            "url": self.url,
            "checksum": self.checksum,
            "size": self.size,
            "force": self.force,
            "constraints": dict(self.constraints),
            "releaseNotes": self.release_notes,
        }


@dataclass(frozen=True)
class UpgradeStrategy:
    force: bool = False
    priority: str = "low"
    time_window: Optional[str] = None
    rollback: Optional[bool] = None

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"force": self.force, "priority": self.priority}
        if self.time_window is not None:
            data["timeWindow"] = self.time_window
        if self.rollback is not None:
            data["rollback"] = self.rollback
        return data


@dataclass(frozen=True)
class OtaDecision:
    available: bool
    target_firmware: Optional[TargetFirmware] = None
    strategy: UpgradeStrategy = field(default_factory=UpgradeStrategy)
    reason: str = ""
    retry: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def unavailable(cls, reason: str, retry: Optional[Dict[str, int]] = None) -> "OtaDecision":
        return cls(available=False, reason=reason, retry=dict(retry or {}))

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"available": self.available, "strategy": self.strategy.as_dict()}
        if self.target_firmware is not None:
            data["targetFirmware"] = self.target_firmware.as_dict()
        if self.retry:
            data["retry"] = dict(self.retry)
        return data


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OtaStrategy:
    """Decides whether and what firmware to offer a bootstrapping device."""

    def __init__(
        self,
        config: Optional[PolicyConfig] = None,
        upgrade_history: Optional[UpgradeHistory] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config or PolicyConfig()
        self._history = upgrade_history
        self._clock = clock

    def with_config(self, config: PolicyConfig) -> "OtaStrategy":
        return OtaStrategy(config, self._history, self._clock)

    def decide(self, request: BootstrapRequest, tenant_id: str) -> OtaDecision:
        ota = self.config.ota
        retry = {"baseMs": ota.retry.base_ms, "maxMs": ota.retry.max_ms}
        firmware = request.firmware
        if firmware is None:
            return OtaDecision.unavailable("firmware_unknown", retry)

        channel = firmware.channel
        if not self.is_channel_allowed(tenant_id, channel):
            logger.debug("OTA channel %s not allowed for tenant %s", channel, tenant_id)
            return OtaDecision.unavailable("channel_not_allowed", retry)

        release = self.latest_release(channel)
        if release is None or version_key(release.version) <= version_key(firmware.current):
            return OtaDecision.unavailable("up_to_date", retry)

        if self._is_throttled(tenant_id, request.device_id, channel):
            return OtaDecision.unavailable("upgrade_interval", retry)

        strategy = self._strategy(tenant_id, channel, release)
        target = TargetFirmware(
            version=release.version,
            build=release.build,
            channel=channel,
            url=release.url,
            checksum=release.checksum,
            size=release.size,
            force=1 if strategy.force else 0,
            constraints=self._constraints(request, channel),
            release_notes=release.release_notes,
        )
        return OtaDecision(available=True, target_firmware=target, strategy=strategy, retry=retry)

    def is_channel_allowed(self, tenant_id: str, channel: str) -> bool:
        policy = self.config.ota.tenants.get(tenant_id)
        if policy is None:
            return True
        return channel in policy.allowed_channels

    def latest_release(self, channel: str) -> Optional[FirmwareRelease]:
        releases: List[FirmwareRelease] = self.config.ota.releases.get(channel, [])
        if not releases:
            return None
        return max(releases, key=lambda item: version_key(item.version))

    def upgrade_interval(self, channel: str) -> timedelta:
        policy = self.config.ota.channels.get(channel)
        hours = policy.upgrade_interval_hours if policy else 24
        return timedelta(hours=hours)

    def _is_throttled(self, tenant_id: str, device_id: str, channel: str) -> bool:
        if self._history is None:
            return False
        last = self._history.last_upgrade_at(tenant_id, device_id)
        if last is None:
            return False
        return self._clock() - last < self.upgrade_interval(channel)

    def _strategy(self, tenant_id: str, channel: str, release: FirmwareRelease) -> UpgradeStrategy:
        marked = any(marker in release.version.lower() for marker in FORCE_MARKERS)
        tenant_policy = self.config.ota.tenants.get(tenant_id)
        force = marked or bool(tenant_policy and tenant_policy.force)
        priority = PRIORITY_CRITICAL if marked else CHANNEL_PRIORITY.get(channel, "low")
        return UpgradeStrategy(
            force=force,
            priority=priority,
            time_window=self.config.ota.constraints.time_window,
            rollback=True if force else None,
        )

    def _constraints(self, request: BootstrapRequest, channel: str) -> Dict[str, Any]:
        defaults = self.config.ota.constraints
        return {
            "minBatteryPct": defaults.min_battery_pct,
            "network": defaults.network,
            "timeWindow": defaults.time_window,
            "channelMatch": channel,
            "hardwareVersion": request.hardware.version if request.hardware else None,
            "deviceType": request.device_type,
        }


__all__ = ["OtaDecision", "OtaStrategy", "TargetFirmware", "UpgradeHistory", "UpgradeStrategy", "version_key"]
