"""Concrete frame transports.

``MemoryRelay`` is an in-process relay with a history store, used by local
development nodes and tests. ``HttpRelayTransport`` talks to an HTTP relay
service with JWT-authenticated requests.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from typing import Any

import httpx
from jose import jwt

from chorus_sync.core.errors import TransportError
from chorus_sync.core.settings import settings
from chorus_sync.utils.clock import Clock, SystemClock
from chorus_sync.utils.hash import blake3_hexdigest

logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_OK = 200
HTTP_ACCEPTED = 202
HTTP_INTERNAL_SERVER_ERROR = 500

_OFFLINE = object()


def _json_object(response: httpx.Response) -> dict[str, Any]:
    """Decode a relay response body that must be a JSON object."""
    try:
        body = response.json()
    except ValueError as exc:
        raise TransportError(f"Relay sent a malformed body: {exc}") from exc
    if not isinstance(body, dict):
        raise TransportError(f"Relay sent {type(body).__name__} where an object was expected")
    return body


def _frames_of(body: dict[str, Any]) -> list[bytes]:
    frames = body.get("frames") or []
    if not isinstance(frames, list):
        raise TransportError("Relay sent frames that are not a list")
    return [str(frame).encode("utf-8") for frame in frames]


@dataclass
class StoredFrame:
    topic: str
    timestamp_ms: int
    frame: bytes


class MemoryRelay:
    """An in-process pub/sub hub shared by several ``MemoryTransport`` peers.

    Knobs for exercising failure paths:

    * ``set_online(False)`` drops every subscription and fails publishes.
    * ``acknowledge`` controls whether publishes report an acknowledgement.
    * ``hang_publishes`` makes publishes never return.
    * ``deliver_live`` stores published frames without relaying them live.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self.history: list[StoredFrame] = []
        self._subscribers: list[tuple[str, asyncio.Queue[object]]] = []
        self.online = True
        self.acknowledge = True
        self.hang_publishes = False
        self.deliver_live = True
        self.publish_count = 0

    def transport(self) -> MemoryTransport:
        return MemoryTransport(self)

    def set_online(self, online: bool) -> None:
        if online == self.online:
            return
        self.online = online
        if not online:
            for _, queue in self._subscribers:
                queue.put_nowait(_OFFLINE)
            self._subscribers.clear()

    def store(self, topic: str, frame: bytes, timestamp_ms: int | None = None) -> None:
        """Put a frame into history without relaying it live."""
        stamp = self._clock.now_ms() if timestamp_ms is None else timestamp_ms
        self.history.append(StoredFrame(topic=topic, timestamp_ms=stamp, frame=frame))

    def inject(self, topic: str, frame: bytes, *, store: bool = True) -> None:
        """Relay a frame as if another peer published it."""
        if store:
            self.store(topic, frame)
        for sub_topic, queue in list(self._subscribers):
            if sub_topic == topic:
                queue.put_nowait(frame)

    async def publish(self, topic: str, frame: bytes) -> bool:
        if not self.online:
            raise TransportError("Relay is offline")
        if self.hang_publishes:
            await asyncio.Event().wait()
        self.publish_count += 1
        self.store(topic, frame)
        if self.deliver_live:
            self.inject(topic, frame, store=False)
        return self.acknowledge

    def subscribe(self, topic: str) -> asyncio.Queue[object]:
        if not self.online:
            raise TransportError("Relay is offline")
        queue: asyncio.Queue[object] = asyncio.Queue()
        self._subscribers.append((topic, queue))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[object]) -> None:
        self._subscribers = [(t, q) for t, q in self._subscribers if q is not queue]

    def query(self, topic: str, start_ms: int, end_ms: int) -> list[bytes]:
        if not self.online:
            raise TransportError("Relay is offline")
        return [
            item.frame
            for item in self.history
            if item.topic == topic and start_ms <= item.timestamp_ms <= end_ms
        ]


class MemoryTransport:
    """One peer's connection to a ``MemoryRelay``."""

    def __init__(self, relay: MemoryRelay) -> None:
        self.relay = relay
        self._queues: list[asyncio.Queue[object]] = []

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        for queue in self._queues:
            self.relay.unsubscribe(queue)
            queue.put_nowait(None)
        self._queues.clear()

    async def publish(self, topic: str, frame: bytes) -> bool:
        return await self.relay.publish(topic, frame)

    async def subscribe(self, topic: str) -> AsyncIterator[bytes]:
        queue = self.relay.subscribe(topic)
        self._queues.append(queue)
        return self._drain(queue)

    async def _drain(self, queue: asyncio.Queue[object]) -> AsyncIterator[bytes]:
        try:
            while True:
                item = await queue.get()
                if item is None:
                    return
                if item is _OFFLINE:
                    raise TransportError("Relay went offline")
                yield item  # type: ignore[misc]
        finally:
            self.relay.unsubscribe(queue)
            if queue in self._queues:
                self._queues.remove(queue)

    async def query_history(self, topic: str, start_ms: int, end_ms: int) -> AsyncIterator[bytes]:
        for frame in self.relay.query(topic, start_ms, end_ms):
            yield frame


@dataclass(frozen=True)
class RelayConfig:
    """Immutable configuration for the HTTP relay transport."""

    base_url: str
    node_id: str
    shared_secret: str | None
    audience: str
    token_ttl_seconds: int
    timeout_seconds: float
    pull_interval_seconds: float


def load_relay_config() -> RelayConfig:
    """Build configuration object from global settings."""
    if not settings.relay_base_url:
        raise TransportError("CHORUS_SYNC_RELAY_BASE_URL is not configured")
    return RelayConfig(
        base_url=settings.relay_base_url,
        node_id=settings.relay_node_id,
        shared_secret=settings.relay_shared_secret,
        audience=settings.relay_audience,
        token_ttl_seconds=settings.relay_token_ttl_seconds,
        timeout_seconds=float(settings.relay_http_timeout_seconds),
        pull_interval_seconds=float(settings.relay_pull_interval_seconds),
    )


class HttpRelayTransport:
    """HTTP client wrapper for a relay service.

    Endpoints: ``POST /relay/publish``, ``GET /relay/stream`` (cursor
    polling) and ``GET /relay/history``. Frames travel as UTF-8 JSON text.
    """

    def __init__(
        self,
        config: RelayConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or load_relay_config()
        self._http_transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.config.base_url,
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    transport=self._http_transport,
                )
        return self._client

    def _build_auth_headers(self, *, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {"X-Chorus-Node-Id": self.config.node_id}

        if self.config.shared_secret:
            now = int(time.time())
            payload = {
                "iss": self.config.node_id,
                "aud": self.config.audience,
                "iat": now,
                "exp": now + max(1, self.config.token_ttl_seconds),
                "jti": secrets.token_hex(8),
            }
            token = jwt.encode(payload, self.config.shared_secret, algorithm="HS256")
            headers["Authorization"] = f"Bearer {token}"

        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_data: Any | None = None,
        params: Mapping[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> httpx.Response:
        client = await self._ensure_client()
        try:
            response = await client.request(
                method,
                path,
                json=json_data,
                params=params,
                headers=self._build_auth_headers(idempotency_key=idempotency_key),
            )
        except httpx.TimeoutException as exc:
            raise TimeoutError(f"Relay request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Relay request failed: {exc}") from exc
        if response.status_code >= HTTP_INTERNAL_SERVER_ERROR:
            raise TransportError(f"Relay responded with {response.status_code}")
        return response

    async def connect(self) -> None:
        await self._ensure_client()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def publish(self, topic: str, frame: bytes) -> bool:
        response = await self._request(
            "POST",
            "/relay/publish",
            json_data={"topic": topic, "frame": frame.decode("utf-8")},
            idempotency_key=blake3_hexdigest(frame),
        )
        if response.status_code not in (HTTP_OK, HTTP_ACCEPTED):
            raise TransportError(f"Relay rejected publish ({response.status_code})")
        body = _json_object(response) if response.content else {}
        return bool(body.get("acknowledged", response.status_code == HTTP_OK))

    async def subscribe(self, topic: str) -> AsyncIterator[bytes]:
        # Poll once so an unreachable relay fails the subscription up front.
        first = await self._pull(topic, None)
        return self._poll(topic, first)

    async def _pull(self, topic: str, cursor: str | None) -> tuple[str | None, list[bytes]]:
        params: dict[str, Any] = {"topic": topic}
        if cursor:
            params["cursor"] = cursor
        response = await self._request("GET", "/relay/stream", params=params)
        if response.status_code != HTTP_OK:
            raise TransportError(f"Relay stream responded with {response.status_code}")
        body = _json_object(response)
        cursor = body.get("cursor") or cursor
        return (str(cursor) if cursor else None), _frames_of(body)

    async def _poll(
        self, topic: str, first: tuple[str | None, list[bytes]]
    ) -> AsyncIterator[bytes]:
        cursor, frames = first
        while True:
            for frame in frames:
                yield frame
            await asyncio.sleep(self.config.pull_interval_seconds)
            try:
                cursor, frames = await self._pull(topic, cursor)
            except TimeoutError as exc:
                raise TransportError(str(exc)) from exc

    async def query_history(self, topic: str, start_ms: int, end_ms: int) -> AsyncIterator[bytes]:
        try:
            response = await self._request(
                "GET",
                "/relay/history",
                params={"topic": topic, "start": start_ms, "end": end_ms},
            )
        except TimeoutError as exc:
            raise TransportError(str(exc)) from exc
        if response.status_code != HTTP_OK:
            raise TransportError(f"Relay history responded with {response.status_code}")
        for frame in _frames_of(_json_object(response)):
            yield frame
