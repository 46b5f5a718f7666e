"""API 错误与统一响应封装"""

from __future__ import annotations

from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Dict, List, Optional, Sequence

from django.http import HttpRequest, JsonResponse
from ninja.errors import ValidationError as NinjaValidationError

from apps.policy.errors import ValidationError

_PARAM_SOURCES = ("body", "query", "path", "header", "cookie", "form")


@dataclass(slots=True)
class ApiError(Exception):
    """业务层抛出的统一错误类型"""

    error_code: str
    message: str
    status_code: int
    errors: Optional[List[Dict[str, str]]] = None

    @classmethod
    def from_validation(cls, exc: ValidationError) -> "ApiError":
        return cls("VALIDATION_ERROR", exc.message, HTTPStatus.BAD_REQUEST, exc.as_list())


def api_error_handler(_: HttpRequest, exc: ApiError) -> JsonResponse:
    """Ninja 异常处理回调，转换为 JSON 响应"""

    body: Dict[str, Any] = {
        "success": False,
        "error_code": exc.error_code,
        "message": exc.message,
    }
    if exc.errors is not None:
        body["errors"] = exc.errors
    return JsonResponse(body, status=exc.status_code)


def _field_name(loc: Sequence[Any]) -> str:
    parts = [str(item) for item in loc]
    if parts and parts[0] in _PARAM_SOURCES:
        source, parts = parts[0], parts[1:]
        # body errors are nested under the view's parameter name
        if source == "body" and len(parts) > 1:
            parts = parts[1:]
    return ".".join(parts) or "body"


def validation_error_handler(_: HttpRequest, exc: NinjaValidationError) -> JsonResponse:
    """请求体/参数校验失败时返回 400 与字段级错误"""

    errors = [
        {"field": _field_name(item.get("loc", ())), "message": str(item.get("msg", "invalid value"))}
        for item in exc.errors
    ]
    return JsonResponse(
        {
            "success": False,
            "error_code": "VALIDATION_ERROR",
            "message": "request validation failed",
            "errors": errors,
        },
        status=HTTPStatus.BAD_REQUEST,
    )


__all__ = ["ApiError", "api_error_handler", "validation_error_handler"]
