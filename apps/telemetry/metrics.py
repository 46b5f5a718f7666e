"""Prometheus 指标注册中心"""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

# API 侧指标
API_REQUESTS = Counter(
    "devicehub_api_requests_total",
    "HTTP API 请求次数，按 endpoint/status 区分",
    labelnames=("endpoint", "status"),
)
API_LATENCY = Histogram(
    "devicehub_api_latency_seconds",
    "HTTP API 请求耗时",
    labelnames=("endpoint",),
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1),
)
BROKER_DECISIONS = Counter(
    "devicehub_broker_decisions_total",
    "Broker webhook decisions",
    labelnames=("hook", "result"),
)

# 协议适配器指标
ADAPTER_MESSAGES = Counter(
    "devicehub_adapter_messages_total",
    "适配器收发的消息量",
    labelnames=("protocol", "direction"),
)
ADAPTER_RECONNECTS = Counter(
    "devicehub_adapter_reconnects_total",
    "适配器重连次数",
    labelnames=("protocol",),
)
ADAPTER_CONNECTED = Gauge(
    "devicehub_adapter_connected",
    "适配器连接状态 (1=connected)",
    labelnames=("protocol",),
)
DEAD_LETTER_COUNTER = Counter(
    "devicehub_dead_letters_total",
    "被丢弃的消息数量",
    labelnames=("reason",),
)

# 策略注册表
REGISTERED_RESOLVERS = Gauge(
    "devicehub_policy_resolvers",
    "已缓存的策略解析器数量",
)


def observe_api(endpoint: str, status: str, elapsed: float) -> None:
    """记录 API 请求"""

    API_REQUESTS.labels(endpoint=endpoint, status=status).inc()
    API_LATENCY.labels(endpoint=endpoint).observe(elapsed)


def record_broker_decision(hook: str, result: str) -> None:
    BROKER_DECISIONS.labels(hook=hook, result=result).inc()


def record_adapter_message(protocol: str, direction: str) -> None:
    ADAPTER_MESSAGES.labels(protocol=protocol, direction=direction).inc()


def mark_reconnect(protocol: str) -> None:
    """记录适配器重连"""

    ADAPTER_RECONNECTS.labels(protocol=protocol).inc()


def set_adapter_connected(protocol: str, connected: bool) -> None:
    ADAPTER_CONNECTED.labels(protocol=protocol).set(1 if connected else 0)


def record_dead_letter(reason: str) -> None:
    """记录死信"""

    DEAD_LETTER_COUNTER.labels(reason=reason).inc()


def set_registered_resolvers(count: int) -> None:
    REGISTERED_RESOLVERS.set(count)


def export_prometheus() -> tuple[bytes, str]:
    """导出 Prometheus 文本及 Content-Type"""

    data = generate_latest()
    return data, CONTENT_TYPE_LATEST
