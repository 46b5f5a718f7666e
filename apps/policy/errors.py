"""策略引擎的异常类型。"""

from __future__ import annotations

from typing import List, Optional, Tuple


class DeviceHubError(Exception):
    """Base class for domain errors."""


class ValidationError(DeviceHubError):
    """Malformed request input, carries per-field detail."""

    def __init__(self, message: str, errors: Optional[List[Tuple[str, str]]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.errors = list(errors or [])

    def as_list(self) -> List[dict]:
        return [{"field": field, "message": message} for field, message in self.errors]


class InvalidTopicSegment(ValidationError):
    """A tenant/device type/device id that cannot be placed in a topic."""

    def __init__(self, field: str, value: str) -> None:
        super().__init__(f"invalid {field}", [(field, f"unsupported characters in {value!r}")])
        self.field = field
        self.value = value


class PolicyError(DeviceHubError):
    """Unknown tenant, device type or channel."""


class TransportError(ConnectionError):
    """Adapter connect/publish failure."""


__all__ = [
    "DeviceHubError",
    "InvalidTopicSegment",
    "PolicyError",
    "TransportError",
    "ValidationError",
]
