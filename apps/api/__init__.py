"""HTTP API：按运行时组装 NinjaAPI。"""

from __future__ import annotations

from typing import TYPE_CHECKING

from ninja import NinjaAPI
from ninja.errors import ValidationError as NinjaValidationError

from apps.adapters.base import ProtocolType
from apps.adapters.http_adapter import HTTPAdapter

from .errors import ApiError, api_error_handler, validation_error_handler
from .routes import bootstrap, broker, ops

if TYPE_CHECKING:
    from apps.runtime import Runtime


def build_api(runtime: "Runtime", namespace: str = "api") -> NinjaAPI:
    """Mount every router on a fresh ``NinjaAPI`` bound to ``runtime``."""

    api = NinjaAPI(
        title="DeviceHub API",
        version="1.0.0",
        docs_url="/docs/",
        urls_namespace=namespace,
    )
    api.add_exception_handler(ApiError, api_error_handler)
    api.add_exception_handler(NinjaValidationError, validation_error_handler)
    api.add_router("api/v1", bootstrap.build_router(runtime.bootstrap_service))
    api.add_router("api/v1/emqx", broker.build_router(runtime.broker_auth_service))
    api.add_router("api/v1/ops", ops.build_router(runtime.registry, runtime.protocol_manager))

    http_adapter = runtime.protocol_manager.get_adapter(ProtocolType.HTTP)
    if isinstance(http_adapter, HTTPAdapter):
        api.add_router("api/v1/ingest", http_adapter.build_router())
    return api


__all__ = ["build_api"]
