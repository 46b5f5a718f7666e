"""根据配置构建协议适配器。"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping

from .base import ProtocolAdapter, ProtocolType
from .coap_adapter import CoAPAdapter
from .http_adapter import HTTPAdapter
from .mqtt_adapter import MQTTAdapter
from .retry import RetryPolicy
from .udp_adapter import UDPAdapter
from .websocket_adapter import WebSocketAdapter

_SERVER_OPTIONS = ("subscriptions", "outbox_size")


class AdapterFactory:
    """构建适配器；``options`` 对应 ``settings.PROTOCOLS[<protocol>]``。"""

    def __init__(self) -> None:
        self._builders: Dict[ProtocolType, Callable[[Dict[str, Any]], ProtocolAdapter]] = {
            ProtocolType.MQTT: self._create_mqtt_adapter,
            ProtocolType.HTTP: self._create_http_adapter,
            ProtocolType.WEBSOCKET: self._create_websocket_adapter,
            ProtocolType.UDP: self._create_udp_adapter,
            ProtocolType.COAP: self._create_coap_adapter,
        }

    def create(self, protocol: Any, options: Mapping[str, Any]) -> ProtocolAdapter:
        try:
            protocol = ProtocolType(protocol)
        except ValueError as exc:
            raise ValueError(f"未知的协议类型: {protocol}") from exc
        opts = dict(options or {})
        return self._builders[protocol](opts)

    def create_enabled(self, protocols: Mapping[str, Mapping[str, Any]]) -> List[ProtocolAdapter]:
        """Adapters for every protocol whose options say ``enabled``."""

        return [
            self.create(name, options)
            for name, options in protocols.items()
            if (options or {}).get("enabled", False)
        ]

    @staticmethod
    def _common(opts: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "enabled": bool(opts.get("enabled", True)),
            "retry_policy": RetryPolicy.from_options(opts.get("retry") or {}),
        }

    def _server(self, opts: Dict[str, Any]) -> Dict[str, Any]:
        common = self._common(opts)
        for key in _SERVER_OPTIONS:
            if key in opts:
                common[key] = opts[key]
        return common

    def _create_mqtt_adapter(self, opts: Dict[str, Any]) -> ProtocolAdapter:
        broker_url = opts.get("broker_url")
        if not broker_url:
            raise ValueError("MQTT 配置缺失 broker_url")
        extra = {
            key: opts[key]
            for key in ("client_id", "keepalive", "default_qos", "connect_timeout", "publish_timeout")
            if key in opts
        }
        if "subscriptions" in opts:
            extra["subscriptions"] = tuple(opts["subscriptions"])
        return MQTTAdapter(broker_url=broker_url, **extra, **self._common(opts))

    def _create_http_adapter(self, opts: Dict[str, Any]) -> ProtocolAdapter:
        return HTTPAdapter(**self._server(opts))

    def _create_websocket_adapter(self, opts: Dict[str, Any]) -> ProtocolAdapter:
        return WebSocketAdapter(
            host=opts.get("host", "0.0.0.0"),
            port=int(opts.get("port", 8765)),
            path=opts.get("path", "/ws"),
            **self._server(opts),
        )

    def _create_udp_adapter(self, opts: Dict[str, Any]) -> ProtocolAdapter:
        return UDPAdapter(
            host=opts.get("host", "0.0.0.0"),
            port=int(opts.get("port", 5684)),
            max_peers=int(opts.get("max_peers", 4096)),
            **self._server(opts),
        )

    def _create_coap_adapter(self, opts: Dict[str, Any]) -> ProtocolAdapter:
        return CoAPAdapter(host=opts.get("host", "0.0.0.0"), port=int(opts.get("port", 5683)), **self._server(opts))


__all__ = ["AdapterFactory"]
