"""组装根：显式构造所有服务对象，供 urls/asgi 与测试共享。"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from apps.adapters.factory import AdapterFactory
from apps.policy.config import PolicyConfigLoader
from apps.policy.ota import OtaStrategy
from apps.policy.registry import ConfigLoader, PolicyRegistry
from apps.repositories.device_token_repository import InMemoryDeviceTokenStore
from apps.repositories.upgrade_history import InMemoryUpgradeHistory
from apps.services.bootstrap_service import BootstrapOptions, BootstrapService
from apps.services.broker_auth_service import BrokerAuthService
from apps.services.message_bus import MessageBus
from apps.services.ota_tracking import OtaStatusRecorder
from apps.services.protocol_manager import ProtocolManager

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    registry: PolicyRegistry
    upgrade_history: InMemoryUpgradeHistory
    token_store: InMemoryDeviceTokenStore
    bootstrap_service: BootstrapService
    broker_auth_service: BrokerAuthService
    bus: MessageBus
    protocol_manager: ProtocolManager
    warmup_tenants: tuple = ("default",)

    async def startup(self) -> None:
        self.registry.warmup(self.warmup_tenants)
        await self.protocol_manager.initialize()

    async def shutdown(self) -> None:
        await self.protocol_manager.shutdown()


def build_runtime(
    settings: Any = None,
    *,
    loader: Optional[ConfigLoader] = None,
    protocols: Optional[Mapping[str, Mapping[str, Any]]] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Runtime:
    """Build every service from Django settings (or the given overrides)."""

    if settings is None:
        from django.conf import settings

    loader = loader or PolicyConfigLoader(getattr(settings, "POLICY_CONFIG_PATH", None))
    registry = PolicyRegistry(loader)
    history = InMemoryUpgradeHistory()
    tokens = InMemoryDeviceTokenStore()

    clock_kwargs = {"clock": clock} if clock else {}
    ota = OtaStrategy(registry.config, history, **clock_kwargs)
    options = BootstrapOptions.from_settings(
        getattr(settings, "BOOTSTRAP", {}) or {},
        credential_secret=getattr(settings, "DEVICE_CREDENTIAL_SECRET", None) or settings.SECRET_KEY,
    )
    bootstrap_service = BootstrapService(registry, ota, options, **clock_kwargs)
    broker_service = BrokerAuthService(registry, tokens)

    bus = MessageBus()
    OtaStatusRecorder(history, **clock_kwargs).attach(bus)
    manager = ProtocolManager(bus, registry)
    if protocols is None:
        protocols = getattr(settings, "PROTOCOLS", {}) or {}
    for adapter in AdapterFactory().create_enabled(protocols):
        manager.register_adapter(adapter)

    tenants = tuple(getattr(settings, "POLICY_WARMUP_TENANTS", ("default",)))
    logger.info("Runtime built; protocols=%s", [p.value for p in manager.registered_protocols()])
    return Runtime(
        registry=registry,
        upgrade_history=history,
        token_store=tokens,
        bootstrap_service=bootstrap_service,
        broker_auth_service=broker_service,
        bus=bus,
        protocol_manager=manager,
        warmup_tenants=tenants,
    )


__all__ = ["Runtime", "build_runtime"]
