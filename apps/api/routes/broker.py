"""MQTT Broker (EMQX) HTTP 回调：连接认证与发布/订阅授权。

Both hooks read the raw body themselves so that a malformed request becomes a
``deny`` decision instead of a 4xx the broker might treat as "ignore".
"""

from __future__ import annotations

from http import HTTPStatus
from time import perf_counter
from typing import Any, Dict

from django.http import HttpRequest
from ninja import Router

from apps.api.dependencies.security import JWTAuth, require_admin
from apps.api.errors import ApiError
from apps.policy.errors import PolicyError, ValidationError
from apps.schemas.broker import BrokerDecisionSchema
from apps.services.broker_auth_service import BrokerAuthService
from apps.telemetry.metrics import observe_api


def build_router(service: BrokerAuthService) -> Router:
    router = Router(tags=["Broker Hooks"])

    @router.post("/acl", response=BrokerDecisionSchema, exclude_none=True, summary="ACL webhook")
    def acl(request: HttpRequest) -> Dict[str, Any]:
        started = perf_counter()
        decision = service.check_acl(request.body)
        observe_api("broker_acl", decision.result, perf_counter() - started)
        return decision.as_dict()

    @router.post("/auth", response=BrokerDecisionSchema, exclude_none=True, summary="Auth webhook")
    def auth(request: HttpRequest) -> Dict[str, Any]:
        started = perf_counter()
        decision = service.authenticate(request.body)
        observe_api("broker_auth", decision.result, perf_counter() - started)
        return decision.as_dict()

    @router.get(
        "/acl/policy/{tenant_id}/{device_type}/{device_id}",
        auth=JWTAuth(),
        summary="Resolved ACL of one device",
    )
    def acl_policy(request: HttpRequest, tenant_id: str, device_type: str, device_id: str) -> Dict[str, Any]:
        require_admin(request)
        try:
            return service.describe_acl(tenant_id, device_type, device_id)
        except ValidationError as exc:
            raise ApiError.from_validation(exc) from exc
        except PolicyError as exc:
            raise ApiError("POLICY_ERROR", str(exc), HTTPStatus.UNPROCESSABLE_ENTITY) from exc

    return router


__all__ = ["build_router"]
