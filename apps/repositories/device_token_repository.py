"""Device access tokens checked by the broker auth webhook."""

from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol

from django.contrib.auth.hashers import check_password, make_password

TOKEN_PREFIX = "dt_"


class DeviceTokenStore(Protocol):
    def verify(self, device_id: str, token: str) -> Optional[str]:
        """Return the owning tenant id when ``token`` is valid for ``device_id``."""

    def device_type_of(self, tenant_id: str, device_id: str) -> Optional[str]:
        """Registered device type, or ``None`` when the store does not know it."""


@dataclass
class DeviceTokenRecord:
    tenant_id: str
    device_id: str
    token_hash: str
    device_type: Optional[str] = None
    expires_at: Optional[datetime] = None
    revoked: bool = False

    def is_active(self, now: datetime) -> bool:
        if self.revoked:
            return False
        return self.expires_at is None or self.expires_at > now


def generate_device_token() -> str:
    return TOKEN_PREFIX + secrets.token_hex(32)


def is_token_format_valid(token: str) -> bool:
    if not isinstance(token, str) or not token.startswith(TOKEN_PREFIX):
        return False
    body = token[len(TOKEN_PREFIX):]
    return len(body) == 64 and all(char in "0123456789abcdef" for char in body)


class InMemoryDeviceTokenStore:
    """Keeps only password hashes of issued tokens."""

    def __init__(self) -> None:
        self._records: Dict[str, DeviceTokenRecord] = {}
        self._lock = threading.Lock()

    def issue(
        self,
        tenant_id: str,
        device_id: str,
        ttl: Optional[timedelta] = None,
        device_type: Optional[str] = None,
    ) -> str:
        token = generate_device_token()
        expires_at = datetime.now(timezone.utc) + ttl if ttl else None
        record = DeviceTokenRecord(
            tenant_id=tenant_id,
            device_id=device_id,
            token_hash=make_password(token),
            device_type=device_type,
            expires_at=expires_at,
        )
        with self._lock:
            self._records[device_id] = record
        return token

    def revoke(self, device_id: str) -> bool:
        with self._lock:
            record = self._records.get(device_id)
            if record is None:
                return False
            record.revoked = True
            return True

    def verify(self, device_id: str, token: str) -> Optional[str]:
        if not is_token_format_valid(token):
            return None
        record = self._records.get(device_id)
        if record is None or not record.is_active(datetime.now(timezone.utc)):
            return None
        if not check_password(token, record.token_hash):
            return None
        return record.tenant_id

    def device_type_of(self, tenant_id: str, device_id: str) -> Optional[str]:
        record = self._records.get(device_id)
        if record is None or record.tenant_id != tenant_id:
            return None
        return record.device_type


__all__ = [
    "DeviceTokenRecord",
    "DeviceTokenStore",
    "InMemoryDeviceTokenStore",
    "generate_device_token",
    "is_token_format_valid",
]
