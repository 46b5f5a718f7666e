"""设备引导接口。"""

from __future__ import annotations

import json
from http import HTTPStatus
from time import perf_counter
from typing import Any, Dict, Optional

from django.http import HttpRequest
from ninja import Header, Router

from apps.api.errors import ApiError
from apps.policy.errors import PolicyError, ValidationError
from apps.schemas.bootstrap import ApiErrorSchema, BootstrapRequestSchema, BootstrapResponse
from apps.services.bootstrap_service import BootstrapService
from apps.telemetry.logging import get_logger
from apps.telemetry.metrics import observe_api

logger = get_logger("api.bootstrap")


def _raw_body(request: HttpRequest) -> Dict[str, Any]:
    try:
        body = json.loads(request.body or b"{}")
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def build_router(service: BootstrapService) -> Router:
    router = Router(tags=["Bootstrap"])

    @router.post(
        "/bootstrap",
        response={
            HTTPStatus.OK: BootstrapResponse,
            HTTPStatus.BAD_REQUEST: ApiErrorSchema,
            HTTPStatus.UNPROCESSABLE_ENTITY: ApiErrorSchema,
            HTTPStatus.INTERNAL_SERVER_ERROR: ApiErrorSchema,
        },
        summary="Device bootstrap",
    )
    def bootstrap(
        request: HttpRequest,
        payload: BootstrapRequestSchema,
        x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID"),
    ) -> Dict[str, Any]:
        """Return MQTT credentials, topics, ACL, OTA decision and shadow defaults."""

        status_label = "success"
        started = perf_counter()
        try:
            try:
                return service.bootstrap(payload, header_tenant=x_tenant_id, raw_body=_raw_body(request))
            except ValidationError as exc:
                raise ApiError.from_validation(exc) from exc
            except PolicyError as exc:
                raise ApiError("POLICY_ERROR", str(exc), HTTPStatus.UNPROCESSABLE_ENTITY) from exc
        except ApiError as exc:
            status_label = exc.error_code
            raise
        except Exception as exc:
            status_label = "INTERNAL_ERROR"
            logger.exception(f"bootstrap failed: device={payload.deviceId}")
            raise ApiError(
                "INTERNAL_ERROR",
                "unexpected server error",
                HTTPStatus.INTERNAL_SERVER_ERROR,
            ) from exc
        finally:
            observe_api("bootstrap", status_label, perf_counter() - started)

    return router


__all__ = ["build_router"]
