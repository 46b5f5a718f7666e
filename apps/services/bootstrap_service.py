"""设备引导服务：组装 MQTT 凭证、主题策略、OTA 决策与影子配置。"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

import jwt

from apps.policy.errors import ValidationError
from apps.policy.models import BootstrapRequest
from apps.policy.ota import OtaStrategy
from apps.policy.registry import PolicyRegistry
from apps.policy.resolver import PolicyResult
from apps.policy.topics import is_valid_segment
from apps.schemas.bootstrap import BootstrapRequestSchema

logger = logging.getLogger(__name__)

CREDENTIAL_ALGORITHM = "HS256"


@dataclass(frozen=True)
class BootstrapOptions:
    credential_secret: str
    broker_urls: List[str] = field(default_factory=lambda: ["mqtt://localhost:1883"])
    keepalive_seconds: int = 60
    session_expiry_hours: int = 168
    password_expiry_hours: int = 24
    config_expiry_hours: int = 24
    tls_enabled: bool = False
    default_tenant: Optional[str] = None
    websocket_url: Optional[str] = None
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 60000

    @classmethod
    def from_settings(cls, values: Mapping[str, Any], credential_secret: str) -> "BootstrapOptions":
        known = {name for name in cls.__dataclass_fields__ if name != "credential_secret"}
        kwargs = {key: value for key, value in values.items() if key in known}
        return cls(credential_secret=credential_secret, **kwargs)


@dataclass(frozen=True)
class DeviceCredentials:
    username: str
    client_id: str
    password: str
    password_expires_at: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


class BootstrapService:
    """Turns a validated bootstrap request into the device's connection bundle."""

    def __init__(
        self,
        registry: PolicyRegistry,
        ota_strategy: OtaStrategy,
        options: BootstrapOptions,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._registry = registry
        self._ota = ota_strategy
        self._options = options
        self._clock = clock

    def bootstrap(
        self,
        payload: BootstrapRequestSchema,
        *,
        header_tenant: Optional[str] = None,
        raw_body: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        tenant_id = self.resolve_tenant(payload, header_tenant)
        if payload.signature:
            self.verify_signature(raw_body or {}, tenant_id, payload.deviceId, payload.signature)

        request = payload.to_domain(tenant_id)
        resolver = self._registry.get_or_create_resolver(tenant_id, request.device_type)
        policy = resolver.resolve_policy(request, tenant_id)
        ota = self._ota.with_config(resolver.config).decide(request, tenant_id)
        now = self._clock()
        credentials = self.issue_credentials(tenant_id, request.device_id, now)

        logger.info(
            "Bootstrap issued tenant=%s device=%s type=%s ota=%s",
            tenant_id,
            request.device_id,
            request.device_type,
            ota.available,
        )
        return {
            "success": True,
            "data": {
                "cfg": self._device_config(request, tenant_id, resolver.config.version, now),
                "mqtt": self._mqtt_config(policy, credentials, now),
                "ota": ota.as_dict(),
                "shadowDesired": resolver.config.shadow_for(request.device_type),
                "policies": resolver.config.policies_for(tenant_id),
                "serverTime": {"timestamp": _epoch_ms(now), "timezoneOffset": 0},
                "websocket": self._websocket_config(),
            },
        }

    def resolve_tenant(self, payload: BootstrapRequestSchema, header_tenant: Optional[str]) -> str:
        header_tenant = (header_tenant or "").strip() or None
        if header_tenant is not None and not is_valid_segment(header_tenant):
            raise ValidationError("invalid tenant", [("X-Tenant-ID", "unsupported characters")])
        if header_tenant and payload.tenantId and payload.tenantId != header_tenant:
            raise ValidationError("tenant mismatch", [("tenantId", "does not match X-Tenant-ID header")])
        tenant_id = header_tenant or payload.tenantId or self._options.default_tenant
        if not tenant_id:
            raise ValidationError("tenant is required", [("tenantId", "tenant id is required")])
        return tenant_id

    def issue_credentials(self, tenant_id: str, device_id: str, now: Optional[datetime] = None) -> DeviceCredentials:
        now = now or self._clock()
        expires = now + timedelta(hours=self._options.password_expiry_hours)
        username = f"{tenant_id}_{device_id}"
        password = jwt.encode(
            {
                "sub": username,
                "tenant": tenant_id,
                "device": device_id,
                "type": "device",
                "iat": now,
                "exp": expires,
            },
            self._options.credential_secret,
            algorithm=CREDENTIAL_ALGORITHM,
        )
        return DeviceCredentials(
            username=username,
            client_id=f"{tenant_id}_{device_id}_{_epoch_ms(now)}",
            password=password,
            password_expires_at=_epoch_ms(expires),
        )

    def device_secret(self, tenant_id: str, device_id: str) -> str:
        return hmac.new(
            self._options.credential_secret.encode("utf-8"),
            f"{tenant_id}:{device_id}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def sign(self, body: Mapping[str, Any], tenant_id: str, device_id: str) -> str:
        """Signature a device is expected to attach to its request body."""

        canonical = json.dumps(
            {key: value for key, value in body.items() if key != "signature"},
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )
        secret = self.device_secret(tenant_id, device_id)
        return hmac.new(secret.encode("utf-8"), canonical.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify_signature(self, body: Mapping[str, Any], tenant_id: str, device_id: str, signature: str) -> None:
        expected = self.sign(body, tenant_id, device_id)
        if not hmac.compare_digest(expected, signature.lower()):
            logger.warning("Bootstrap signature mismatch tenant=%s device=%s", tenant_id, device_id)
            raise ValidationError("invalid signature", [("signature", "signature verification failed")])

    def _mqtt_config(self, policy: PolicyResult, credentials: DeviceCredentials, now: datetime) -> Dict[str, Any]:
        options = self._options
        return {
            "brokers": [{"url": url, "priority": index} for index, url in enumerate(options.broker_urls, start=1)],
            "clientId": credentials.client_id,
            "username": credentials.username,
            "password": credentials.password,
            "passwordExpiresAt": credentials.password_expires_at,
            "keepalive": options.keepalive_seconds,
            "cleanStart": True,
            "sessionExpiry": options.session_expiry_hours * 3600,
            "tls": {"enabled": options.tls_enabled},
            "lwt": {
                "topic": policy.topics.status_pub,
                "qos": 1,
                "retain": True,
                "payload": {"ts": now.isoformat(), "online": False, "reason": "connection_lost"},
            },
            "topics": policy.topics.as_dict(),
            "qosRetainPolicy": [entry.as_dict() for entry in policy.qos_retain_policy],
            "acl": policy.acl.as_dict(),
            "backoff": {"baseMs": options.backoff_base_ms, "maxMs": options.backoff_max_ms, "jitter": True},
        }

    def _device_config(
        self, request: BootstrapRequest, tenant_id: str, version: str, now: datetime
    ) -> Dict[str, Any]:
        firmware = None
        if request.firmware is not None:
            firmware = {
                "current": request.firmware.current,
                "build": request.firmware.build,
                "minRequired": request.firmware.min_required,
                "channel": request.firmware.channel,
            }
        return {
            "ver": version,
            "issuedAt": _epoch_ms(now),
            "expiresAt": _epoch_ms(now + timedelta(hours=self._options.config_expiry_hours)),
            "tenant": tenant_id,
            "device": {
                "id": request.device_id,
                "type": request.device_type,
                "uniqueId": request.mac,
                "fw": firmware,
                "hw": request.hardware.version if request.hardware else "unknown",
                "capabilities": list(request.capabilities),
            },
        }

    def _websocket_config(self) -> Optional[Dict[str, Any]]:
        if not self._options.websocket_url:
            return None
        return {
            "enabled": True,
            "url": self._options.websocket_url,
            "reconnectMs": 5000,
            "heartbeatMs": 30000,
            "timeoutMs": 60000,
        }


__all__ = ["BootstrapOptions", "BootstrapService", "DeviceCredentials"]
