"""MQTT 通配符到正则的转换。

``+`` matches exactly one path segment, ``#`` and ``*`` match any number of
segments. Every other character is matched literally.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Iterable

_MULTI_LEVEL = {"#", "*"}


@lru_cache(maxsize=4096)
def compile_pattern(pattern: str) -> "re.Pattern[str]":
    parts = []
    for char in pattern:
        if char == "+":
            parts.append("[^/]+")
        elif char in _MULTI_LEVEL:
            parts.append(".*")
        else:
            parts.append(re.escape(char))
    return re.compile("^" + "".join(parts) + "$")


def has_wildcard(pattern: str) -> bool:
    return "+" in pattern or any(char in pattern for char in _MULTI_LEVEL)


def topic_matches(pattern: str, topic: str) -> bool:
    if pattern == topic:
        return True
    if not has_wildcard(pattern):
        return False
    return compile_pattern(pattern).match(topic) is not None


def matches_any(patterns: Iterable[str], topic: str) -> bool:
    return any(topic_matches(pattern, topic) for pattern in patterns)


__all__ = ["compile_pattern", "has_wildcard", "matches_any", "topic_matches"]
