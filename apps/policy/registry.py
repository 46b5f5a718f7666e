"""策略解析器注册表，按 (tenant, device type) 缓存 PolicyResolver。"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Protocol

from apps.telemetry.metrics import set_registered_resolvers

from .config import PolicyConfig
from .errors import PolicyError
from .resolver import PolicyResolver, PolicyResolverFactory
from .topics import normalize_device_type

logger = logging.getLogger(__name__)


class ConfigLoader(Protocol):
    def load(self) -> PolicyConfig:
        ...


@dataclass
class _Snapshot:
    """Config plus the resolvers built from it. Never mutated once published; writers swap a copy."""

    config: PolicyConfig
    factory: PolicyResolverFactory
    resolvers: Dict[str, Dict[str, PolicyResolver]] = field(default_factory=dict)

    def lookup(self, tenant_id: str, device_type: str) -> Optional[PolicyResolver]:
        return self.resolvers.get(tenant_id, {}).get(device_type)

    def count(self) -> int:
        return sum(len(by_type) for by_type in self.resolvers.values())

    def copy_resolvers(self) -> Dict[str, Dict[str, PolicyResolver]]:
        return {tenant_id: dict(by_type) for tenant_id, by_type in self.resolvers.items()}


class PolicyRegistry:
    """Two-level resolver cache with atomic reload."""

    def __init__(self, loader: ConfigLoader) -> None:
        self._loader = loader
        self._lock = threading.Lock()
        config = loader.load()
        self._snapshot = _Snapshot(config=config, factory=PolicyResolverFactory(config))

    @property
    def config(self) -> PolicyConfig:
        return self._snapshot.config

    def get_resolver(self, tenant_id: str, device_type: str) -> Optional[PolicyResolver]:
        return self._snapshot.lookup(tenant_id, normalize_device_type(device_type))

    def get_or_create_resolver(self, tenant_id: str, device_type: str) -> PolicyResolver:
        """Return the cached resolver, creating it once if absent."""

        device_type = normalize_device_type(device_type)
        snapshot = self._snapshot
        resolver = snapshot.lookup(tenant_id, device_type)
        if resolver is not None:
            return resolver

        self._check_known(snapshot.config, tenant_id, device_type)
        candidate = snapshot.factory.create(tenant_id, device_type)
        with self._lock:
            # reload may have swapped the snapshot while we were building
            current = self._snapshot
            existing = current.lookup(tenant_id, device_type)
            if existing is not None:
                return existing
            if current is not snapshot:
                candidate = current.factory.create(tenant_id, device_type)
            resolvers = current.copy_resolvers()
            resolvers.setdefault(tenant_id, {})[device_type] = candidate
            self._snapshot = replace(current, resolvers=resolvers)
            set_registered_resolvers(self._snapshot.count())
        logger.debug("Registered resolver %s/%s", tenant_id, device_type)
        return candidate

    def warmup(self, tenant_ids: Iterable[str] = ("default",)) -> int:
        """Pre-build resolvers for every configured device type of each tenant."""

        created = 0
        device_types = list(self._snapshot.config.device_types)
        for tenant_id in tenant_ids:
            for device_type in device_types:
                self.get_or_create_resolver(tenant_id, device_type)
                created += 1
        logger.info("Policy registry warmed up; tenants=%s resolvers=%s", list(tenant_ids), created)
        return created

    def reload(self) -> PolicyConfig:
        """Re-read the policy tables and swap in a fully rebuilt snapshot."""

        config = self._loader.load()
        factory = PolicyResolverFactory(config)
        with self._lock:
            keys = [
                (tenant_id, device_type)
                for tenant_id, by_type in self._snapshot.resolvers.items()
                for device_type in by_type
            ]
            fresh = _Snapshot(config=config, factory=factory)
            for tenant_id, device_type in keys:
                if not config.is_known_tenant(tenant_id) or not config.is_known_device_type(device_type):
                    continue
                fresh.resolvers.setdefault(tenant_id, {})[device_type] = factory.create(tenant_id, device_type)
            self._snapshot = fresh
            set_registered_resolvers(fresh.count())
        logger.info("Policy registry reloaded; version=%s resolvers=%s", config.version, fresh.count())
        return config

    def invalidate(self, tenant_id: str, device_type: Optional[str] = None) -> bool:
        """Drop one resolver, or every resolver of a tenant."""

        with self._lock:
            snapshot = self._snapshot
            if tenant_id not in snapshot.resolvers:
                return False
            resolvers = snapshot.copy_resolvers()
            if device_type is None:
                removed = bool(resolvers.pop(tenant_id))
            else:
                by_type = resolvers[tenant_id]
                removed = by_type.pop(normalize_device_type(device_type), None) is not None
                if not by_type:
                    resolvers.pop(tenant_id)
            self._snapshot = replace(snapshot, resolvers=resolvers)
            set_registered_resolvers(self._snapshot.count())
        return removed

    def clear(self) -> None:
        with self._lock:
            self._snapshot = replace(self._snapshot, resolvers={})
            set_registered_resolvers(0)

    def registered_tenants(self) -> List[str]:
        return sorted(self._snapshot.resolvers)

    def tenant_resolvers(self, tenant_id: str) -> Dict[str, PolicyResolver]:
        return dict(self._snapshot.resolvers.get(tenant_id, {}))

    def is_device_type_supported(self, device_type: str) -> bool:
        return self._snapshot.config.is_known_device_type(device_type)

    def stats(self) -> Dict[str, object]:
        snapshot = self._snapshot
        type_distribution: Counter = Counter()
        tenant_distribution: Dict[str, int] = {}
        for tenant_id, by_type in snapshot.resolvers.items():
            tenant_distribution[tenant_id] = len(by_type)
            type_distribution.update(by_type.keys())
        return {
            "config_version": snapshot.config.version,
            "total_tenants": len(tenant_distribution),
            "total_resolvers": snapshot.count(),
            "device_type_distribution": dict(type_distribution),
            "tenant_distribution": tenant_distribution,
        }

    @staticmethod
    def _check_known(config: PolicyConfig, tenant_id: str, device_type: str) -> None:
        if not config.is_known_tenant(tenant_id):
            raise PolicyError(f"unknown tenant: {tenant_id}")
        if not config.is_known_device_type(device_type):
            raise PolicyError(f"unsupported device type: {device_type}")


__all__ = ["PolicyRegistry"]
