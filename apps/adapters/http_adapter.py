"""HTTP 适配器：设备通过 REST 上报或轮询下行消息。

``POST /ingest/{topic}`` emits the request body as a message on ``topic``;
``GET /ingest/{topic}`` drains what was published to ``topic`` since the last
poll.
"""

from __future__ import annotations

import json
from http import HTTPStatus
from time import perf_counter
from typing import Any, Tuple

from django.http import HttpRequest
from ninja import Router

from apps.policy.topics import parse_any
from apps.schemas.ingest import IngestAck, IngestPoll
from apps.telemetry.metrics import observe_api

from .base import Payload, ProtocolType, ServerAdapter


def _jsonable(payload: Payload) -> Any:
    if isinstance(payload, bytes):
        try:
            return json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return {"raw": payload.hex()}
    return payload


class HTTPAdapter(ServerAdapter):
    """No socket of its own; requests arrive through the Django API."""

    protocol = ProtocolType.HTTP

    async def _open(self) -> None:
        self._logger.info("HTTP ingest ready")

    async def _close(self) -> None:
        self._outbox.clear()

    async def publish(self, topic: str, payload: Payload, **options: Any) -> bool:
        self.enqueue(topic, payload)
        return True

    def build_router(self) -> Router:
        router = Router(tags=["Ingest"])
        adapter = self

        @router.post(
            "/{path:topic}",
            response={HTTPStatus.ACCEPTED: IngestAck, HTTPStatus.BAD_REQUEST: IngestAck, HTTPStatus.NOT_FOUND: IngestAck},
            summary="Device uplink over HTTP",
        )
        async def ingest(request: HttpRequest, topic: str) -> Tuple[int, IngestAck]:
            status_label = "success"
            started = perf_counter()
            try:
                if parse_any(topic) is None:
                    status_label = "INVALID_TOPIC"
                    return HTTPStatus.BAD_REQUEST, IngestAck(success=False, topic=topic, message="invalid topic")
                if not adapter.status.connected:
                    status_label = "UNAVAILABLE"
                    return HTTPStatus.NOT_FOUND, IngestAck(success=False, topic=topic, message="ingest disabled")
                source = request.META.get("REMOTE_ADDR", "")
                accepted = await adapter.receive(topic, bytes(request.body), source=source)
                if not accepted:
                    status_label = "UNSUBSCRIBED"
                    return HTTPStatus.NOT_FOUND, IngestAck(success=False, topic=topic, message="topic not subscribed")
                return HTTPStatus.ACCEPTED, IngestAck(success=True, topic=topic)
            finally:
                observe_api("ingest_post", status_label, perf_counter() - started)

        @router.get("/{path:topic}", response=IngestPoll, summary="Poll downlink messages")
        async def poll(request: HttpRequest, topic: str) -> IngestPoll:
            started = perf_counter()
            try:
                messages = [_jsonable(item) for item in adapter.drain(topic)]
                return IngestPoll(topic=topic, messages=messages)
            finally:
                observe_api("ingest_poll", "success", perf_counter() - started)

        return router


__all__ = ["HTTPAdapter"]
