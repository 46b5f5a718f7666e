"""统一日志获取入口，附带上下文字段。"""

from __future__ import annotations

import logging
from typing import Any, Dict


class ContextLogger(logging.LoggerAdapter):
    """LoggerAdapter that merges bound context into ``extra``."""

    def process(self, msg: str, kwargs: Dict[str, Any]):
        extra = kwargs.pop("extra", {})
        merged = {**self.extra, **extra}
        if merged:
            kwargs["extra"] = merged
        if self.extra:
            context = " ".join(f"{key}={value}" for key, value in self.extra.items())
            msg = f"[{context}] {msg}"
        return msg, kwargs

    def bind(self, **context: Any) -> "ContextLogger":
        """Return a child adapter with additional context."""

        return ContextLogger(self.logger, {**self.extra, **context})


def get_logger(name: str, **context: Any) -> ContextLogger:
    """返回绑定给定上下文的 LoggerAdapter。"""

    logger = logging.getLogger(name)
    return ContextLogger(logger, context or {})


__all__ = ["ContextLogger", "get_logger"]
