"""运维接口（健康检查、指标、策略注册表管理）。"""

from __future__ import annotations

from http import HTTPStatus
from time import perf_counter
from typing import Any, Dict

from django.http import HttpRequest, HttpResponse
from ninja import Router

from apps.api.dependencies.security import JWTAuth, require_admin
from apps.api.errors import ApiError
from apps.policy.errors import PolicyError
from apps.policy.registry import PolicyRegistry
from apps.schemas.ops import HealthResponse, InvalidateRequest, InvalidateResponse, PolicyStatsResponse
from apps.services.protocol_manager import ProtocolManager
from apps.telemetry.logging import get_logger
from apps.telemetry.metrics import export_prometheus, observe_api

logger = get_logger("api.ops")


def build_router(registry: PolicyRegistry, manager: ProtocolManager) -> Router:
    router = Router(tags=["Operations"])

    @router.get("/health", response=HealthResponse)
    def health(request: HttpRequest) -> Dict[str, Any]:
        """返回服务健康状态。"""

        stats = registry.stats()
        return {
            "status": "ok",
            "config_version": stats["config_version"],
            "resolvers": stats["total_resolvers"],
            "adapters": manager.all_adapter_status(),
        }

    @router.get("/metrics")
    def metrics(request: HttpRequest) -> HttpResponse:
        """返回 Prometheus 指标文本。"""

        data, content_type = export_prometheus()
        return HttpResponse(data, content_type=content_type)

    @router.get("/policies", response=PolicyStatsResponse, auth=JWTAuth())
    def policy_stats(request: HttpRequest) -> Dict[str, Any]:
        require_admin(request)
        return registry.stats()

    @router.post("/policies/reload", response=PolicyStatsResponse, auth=JWTAuth())
    def reload_policies(request: HttpRequest) -> Dict[str, Any]:
        """重新读取策略 YAML 并原子替换注册表。"""

        status_label = "success"
        started = perf_counter()
        try:
            auth = require_admin(request)
            try:
                registry.reload()
            except PolicyError as exc:
                raise ApiError("POLICY_ERROR", str(exc), HTTPStatus.UNPROCESSABLE_ENTITY) from exc
            logger.info(f"policies reloaded by {auth.user_id}")
            return registry.stats()
        except ApiError as exc:
            status_label = exc.error_code
            raise
        finally:
            observe_api("policies_reload", status_label, perf_counter() - started)

    @router.post("/policies/invalidate", response=InvalidateResponse, auth=JWTAuth())
    def invalidate_policies(request: HttpRequest, payload: InvalidateRequest) -> Dict[str, Any]:
        require_admin(request)
        removed = registry.invalidate(payload.tenantId, payload.deviceType)
        return {"success": removed, "tenantId": payload.tenantId, "deviceType": payload.deviceType}

    return router


__all__ = ["build_router"]
