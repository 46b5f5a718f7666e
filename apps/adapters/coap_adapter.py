"""CoAP adapter backed by aiocoap.

Resources mirror topics: ``POST coap://host/iot/acme/sensor/s1/telemetry``
publishes, ``GET`` on a device's ``cmd`` topic drains queued commands.
"""

from __future__ import annotations

import json
from typing import Any, Optional

import aiocoap.resource as resource
from aiocoap import POST, Code, Context, Message

from apps.policy.topics import parse_any
from apps.telemetry.metrics import record_adapter_message

from .base import Payload, ProtocolType, ServerAdapter, encode_payload

JSON_CONTENT_FORMAT = 50


class TopicResource(resource.Resource, resource.PathCapable):
    """Handles every path below ``/iot``."""

    def __init__(self, adapter: "CoAPAdapter") -> None:
        super().__init__()
        self._adapter = adapter

    @staticmethod
    def topic_for(request: Message) -> str:
        return "/".join(("iot",) + tuple(request.opt.uri_path))

    async def render_post(self, request: Message) -> Message:
        topic = self.topic_for(request)
        if parse_any(topic) is None:
            return Message(code=Code.BAD_REQUEST, payload=b"invalid topic")
        source = getattr(request.remote, "hostinfo", "")
        accepted = await self._adapter.receive(topic, bytes(request.payload), source=source)
        if not accepted:
            return Message(code=Code.NOT_FOUND, payload=b"topic not subscribed")
        return Message(code=Code.CHANGED)

    async def render_get(self, request: Message) -> Message:
        topic = self.topic_for(request)
        if parse_any(topic) is None:
            return Message(code=Code.NOT_FOUND)
        pending = [self._decode(item) for item in self._adapter.drain(topic)]
        body = json.dumps(pending, ensure_ascii=False).encode("utf-8")
        return Message(code=Code.CONTENT, payload=body, content_format=JSON_CONTENT_FORMAT)

    @staticmethod
    def _decode(item: Payload) -> Any:
        if isinstance(item, bytes):
            try:
                return json.loads(item.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                return {"raw": item.hex()}
        return item


class CoAPAdapter(ServerAdapter):
    protocol = ProtocolType.COAP

    def __init__(self, *, host: str = "0.0.0.0", port: int = 5683, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._host = host
        self._port = port
        self._server: Optional[Context] = None
        self._client: Optional[Context] = None

    def build_site(self) -> resource.Site:
        site = resource.Site()
        site.add_resource(("iot",), TopicResource(self))
        return site

    async def _open(self) -> None:
        self._server = await Context.create_server_context(self.build_site(), bind=(self._host, self._port))
        self._logger.info(f"CoAP listening on {self._host}:{self._port}")

    async def _close(self) -> None:
        for context in (self._client, self._server):
            if context is not None:
                await context.shutdown()
        self._client = None
        self._server = None

    async def publish(self, topic: str, payload: Payload, **options: Any) -> bool:
        target = options.get("target")
        if not target:
            self.enqueue(topic, payload)
            return True
        try:
            if self._client is None:
                self._client = await Context.create_client_context()
            request = Message(code=POST, uri=f"coap://{target}/{topic}", payload=encode_payload(payload))
            response = await self._client.request(request).response
        except Exception as exc:
            await self._on_failure(exc)
            return False
        record_adapter_message(self.protocol.value, "out")
        return response.code.is_successful()


__all__ = ["CoAPAdapter", "TopicResource"]
