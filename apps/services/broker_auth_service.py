"""Broker-facing authorization and authentication checks.

Both hooks fail closed: anything ambiguous, malformed or unexpected produces a
``deny`` decision, never an exception.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from pydantic import ValidationError as SchemaValidationError

from apps.policy.errors import DeviceHubError
from apps.policy.models import BootstrapRequest
from apps.policy.registry import PolicyRegistry
from apps.policy.resolver import ACTIONS, AclPolicy
from apps.policy.topics import normalize_device_type, parse_any
from apps.repositories.device_token_repository import DeviceTokenStore
from apps.schemas.broker import AclRequestSchema, AuthRequestSchema
from apps.telemetry.logging import get_logger
from apps.telemetry.metrics import record_broker_decision

ALLOW = "allow"
DENY = "deny"

logger = get_logger("broker_auth")


@dataclass(frozen=True)
class BrokerDecision:
    result: str
    reason: Optional[str] = None
    is_superuser: Optional[bool] = None

    @property
    def allowed(self) -> bool:
        return self.result == ALLOW

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"result": self.result}
        if self.reason is not None:
            data["reason"] = self.reason
        if self.is_superuser is not None:
            data["is_superuser"] = self.is_superuser
        return data


def _deny(reason: str) -> BrokerDecision:
    return BrokerDecision(DENY, reason)


def parse_identity(client_id: str, username: str) -> Optional[Tuple[str, str]]:
    """``{tenant}_{device}[_...]`` client id and ``{tenant}_{device}`` username must agree."""

    client_parts = (client_id or "").split("_")
    user_parts = (username or "").split("_")
    if len(client_parts) < 2 or len(user_parts) != 2:
        return None
    if not all(client_parts[:2]) or not all(user_parts):
        return None
    if client_parts[0] != user_parts[0] or client_parts[1] != user_parts[1]:
        return None
    return user_parts[0], user_parts[1]


class BrokerAuthService:
    def __init__(self, registry: PolicyRegistry, token_store: DeviceTokenStore) -> None:
        self._registry = registry
        self._tokens = token_store

    def check_acl(self, body: Union[bytes, str, AclRequestSchema]) -> BrokerDecision:
        """Authorize one publish/subscribe."""

        try:
            request = body if isinstance(body, AclRequestSchema) else AclRequestSchema.model_validate_json(body)
        except SchemaValidationError:
            decision = _deny("malformed request")
        else:
            try:
                decision = self._check_acl(request)
            except DeviceHubError as exc:
                logger.info(f"ACL policy error: {exc}")
                decision = _deny("policy unavailable")
            except Exception:
                logger.exception("ACL check failed")
                decision = _deny("internal error")
        record_broker_decision("acl", decision.result)
        return decision

    def _check_acl(self, request: AclRequestSchema) -> BrokerDecision:
        identity = parse_identity(request.clientid, request.username)
        if identity is None:
            return _deny("client id and username mismatch")
        tenant_id, device_id = identity
        if request.action not in ACTIONS:
            return _deny("unsupported action")

        parsed = parse_any(request.topic)
        if parsed is None:
            return _deny("invalid topic")
        if parsed.tenant_id != tenant_id:
            return _deny("tenant mismatch")
        if parsed.device_id != device_id:
            return _deny("device mismatch")
        # 设备类型以注册记录为准；未登记的设备只能按 topic 中的类型解析
        registered_type = self._tokens.device_type_of(tenant_id, device_id)
        if registered_type is not None and (
            normalize_device_type(registered_type) != normalize_device_type(parsed.device_type)
        ):
            return _deny("device type mismatch")

        resolver = self._registry.get_or_create_resolver(tenant_id, parsed.device_type)
        if resolver.is_denied(request.topic):
            return _deny("topic denied by policy")
        if not resolver.validate_topic_permission(request.topic, request.action, device_id):
            return _deny("topic not permitted")
        logger.debug(f"ACL allow {request.action} {request.topic}")
        return BrokerDecision(ALLOW)

    def authenticate(self, body: Union[bytes, str, AuthRequestSchema]) -> BrokerDecision:
        """Connection-time check of ``{tenant}:{device}`` client id and device token."""

        try:
            request = body if isinstance(body, AuthRequestSchema) else AuthRequestSchema.model_validate_json(body)
        except SchemaValidationError:
            decision = _deny("malformed request")
        else:
            try:
                decision = self._authenticate(request)
            except Exception:
                logger.exception("Device authentication failed")
                decision = _deny("internal error")
        record_broker_decision("auth", decision.result)
        return decision

    def _authenticate(self, request: AuthRequestSchema) -> BrokerDecision:
        parts = request.clientid.split(":")
        if len(parts) != 2 or not all(parts):
            return _deny("invalid client id")
        tenant_id, device_id = parts
        if request.username != device_id:
            return _deny("username mismatch")
        owner = self._tokens.verify(device_id, request.password)
        if owner is None:
            return _deny("invalid credentials")
        if owner != tenant_id:
            return _deny("tenant mismatch")
        return BrokerDecision(ALLOW, is_superuser=False)

    def describe_acl(self, tenant_id: str, device_type: str, device_id: str) -> Dict[str, Any]:
        """Resolved ACL of one device, for operators."""

        resolver = self._registry.get_or_create_resolver(tenant_id, device_type)
        policy = resolver.resolve_policy(
            BootstrapRequest(device_id=device_id, mac="", device_type=resolver.device_type), tenant_id
        )
        acl: AclPolicy = policy.acl
        return {
            "tenantId": tenant_id,
            "deviceType": resolver.device_type,
            "deviceId": device_id,
            "acl": acl.as_dict(),
        }


__all__ = ["ALLOW", "DENY", "BrokerAuthService", "BrokerDecision", "parse_identity"]
