"""MQTT broker webhook 的请求/响应结构。"""

from __future__ import annotations

from typing import Any, Literal, Optional

from ninja import Schema
from pydantic import field_validator

# EMQX HTTP authorizer access codes
_ACCESS_CODES = {"1": "subscribe", "2": "publish"}


class AclRequestSchema(Schema):
    clientid: str
    username: str = ""
    password: Optional[str] = None
    topic: str
    action: str
    qos: Optional[int] = None
    retain: Optional[bool] = None

    @field_validator("action", mode="before")
    @classmethod
    def _action(cls, value: Any) -> Any:
        text = str(value).strip().lower()
        return _ACCESS_CODES.get(text, text)


class AuthRequestSchema(Schema):
    clientid: str
    username: str
    password: str


class BrokerDecisionSchema(Schema):
    result: Literal["allow", "deny"]
    reason: Optional[str] = None
    is_superuser: Optional[bool] = None


__all__ = ["AclRequestSchema", "AuthRequestSchema", "BrokerDecisionSchema"]
