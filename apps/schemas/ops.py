"""运维接口的请求/响应结构。"""

from __future__ import annotations

from typing import Any, Dict, Optional

from ninja import Schema


class HealthResponse(Schema):
    status: str
    config_version: str
    resolvers: int
    adapters: Dict[str, Dict[str, Any]]


class PolicyStatsResponse(Schema):
    config_version: str
    total_tenants: int
    total_resolvers: int
    device_type_distribution: Dict[str, int]
    tenant_distribution: Dict[str, int]


class InvalidateRequest(Schema):
    tenantId: str
    deviceType: Optional[str] = None


class InvalidateResponse(Schema):
    success: bool
    tenantId: str
    deviceType: Optional[str] = None
