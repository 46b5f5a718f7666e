"""HTTP 接入通道的响应结构。"""

from __future__ import annotations

from typing import Any, List, Optional

from ninja import Schema


class IngestAck(Schema):
    success: bool
    topic: str
    message: Optional[str] = None


class IngestPoll(Schema):
    topic: str
    messages: List[Any]
