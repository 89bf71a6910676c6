"""Transport gateway between the pub/sub network and the sync engine.

This module provides the TransportGateway class that wraps a raw frame
transport. It includes:

- Publish with a bounded acknowledgement wait
- A reconnecting inbound stream that yields only verified messages
- Verified history queries for gap recovery
- Circuit breaker and metrics collection for publish calls
- Connectivity tracking with change listeners
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from chorus_sync.core.errors import (
    CircuitOpenError,
    CodecError,
    PublishTimeoutError,
    SignatureInvalidError,
    TransportError,
)
from chorus_sync.core.settings import settings
from chorus_sync.schemas.messages import Message
from chorus_sync.services.codec import MessageCodec
from chorus_sync.services.outbox import PublishAck

logger = logging.getLogger(__name__)

HISTORY_VERIFY_BATCH = 32

ConnectivityListener = Callable[[bool], None]


class Transport(Protocol):
    """Raw frame transport: a pub/sub relay plus a history store."""

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def publish(self, topic: str, frame: bytes) -> bool:
        """Publish a frame; True when the network acknowledged it."""
        ...

    async def subscribe(self, topic: str) -> AsyncIterator[bytes]:
        """Establish a live subscription; raises ``TransportError`` when offline."""
        ...

    def query_history(self, topic: str, start_ms: int, end_ms: int) -> AsyncIterator[bytes]: ...


class CircuitState(Enum):
    """Circuit breaker states for publish calls."""

    CLOSED = "closed"      # Normal operation - requests allowed
    OPEN = "open"          # Circuit is open - requests blocked
    HALF_OPEN = "half_open"  # Testing if the network is back


@dataclass
class TransportMetrics:
    """Metrics collection for transport operations."""

    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_response_time: float = 0.0
    max_response_time: float = 0.0
    frames_received: int = 0
    frames_dropped: int = 0
    error_counts_by_type: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def record_request(
        self, response_time: float, success: bool, error_type: str | None = None
    ) -> None:
        """Record a publish metric."""
        self.request_count += 1
        self.total_response_time += response_time
        self.max_response_time = max(self.max_response_time, response_time)
        if success:
            self.success_count += 1
        else:
            self.error_count += 1
            if error_type:
                self.error_counts_by_type[error_type] += 1

    def get_average_response_time(self) -> float:
        return self.total_response_time / self.request_count if self.request_count > 0 else 0.0

    def get_success_rate(self) -> float:
        """Get success rate as a percentage."""
        return (self.success_count / self.request_count * 100) if self.request_count > 0 else 0.0


@dataclass
class CircuitBreaker:
    """Circuit breaker guarding publish calls."""

    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    success_threshold: int = 1

    _state: CircuitState = CircuitState.CLOSED
    _failure_count: int = 0
    _success_count: int = 0
    _last_failure_time: float = 0.0

    def is_open(self) -> bool:
        if self._state == CircuitState.OPEN:
            if time.monotonic() - self._last_failure_time > self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
            return self._state == CircuitState.OPEN
        return False

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                self._state = CircuitState.CLOSED
                self._failure_count = 0
        elif self._state == CircuitState.CLOSED:
            self._failure_count = 0

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.monotonic()
        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0

    def get_state(self) -> CircuitState:
        return self._state


class TransportGateway:
    """Verified message boundary over a raw ``Transport``."""

    def __init__(
        self,
        transport: Transport,
        codec: MessageCodec,
        *,
        topic: str | None = None,
        publish_timeout_seconds: float | None = None,
        reconnect_delay_seconds: float | None = None,
        circuit_breaker: CircuitBreaker | None = None,
    ) -> None:
        self._transport = transport
        self._codec = codec
        self.topic = topic or settings.content_topic
        self.publish_timeout_seconds = (
            publish_timeout_seconds
            if publish_timeout_seconds is not None
            else settings.publish_timeout_seconds
        )
        self.reconnect_delay_seconds = (
            reconnect_delay_seconds
            if reconnect_delay_seconds is not None
            else settings.reconnect_delay_seconds
        )
        self._circuit_breaker = circuit_breaker or CircuitBreaker()
        self._metrics = TransportMetrics()
        self._connected = False
        self._closed = False
        self._listeners: list[ConnectivityListener] = []

    # -- connectivity ------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def dropped_invalid(self) -> int:
        return self._metrics.frames_dropped

    def on_connectivity_change(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register a connectivity listener; returns an unsubscribe handle."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_connected(self, connected: bool) -> None:
        if connected == self._connected:
            return
        self._connected = connected
        if connected:
            self._circuit_breaker.reset()
        logger.info("Transport %s", "connected" if connected else "disconnected")
        for listener in list(self._listeners):
            listener(connected)

    async def connect(self) -> None:
        self._closed = False
        await self._transport.connect()

    async def close(self) -> None:
        self._closed = True
        self._set_connected(False)
        await self._transport.close()

    # -- publish -----------------------------------------------------------------

    async def publish(self, message: Message) -> PublishAck:
        """Publish a signed message.

        Raises:
            PublishTimeoutError: No acknowledgement within the timeout.
            CircuitOpenError: The circuit breaker is open; nothing was sent.
            TransportError: The transport refused or failed the publish.
        """
        if self._circuit_breaker.is_open():
            raise CircuitOpenError("Transport circuit breaker is open")

        frame = self._codec.to_frame(message)
        start_time = time.monotonic()
        try:
            acknowledged = await asyncio.wait_for(
                self._transport.publish(self.topic, frame),
                timeout=self.publish_timeout_seconds,
            )
        except TimeoutError as exc:
            self._circuit_breaker.record_failure()
            self._metrics.record_request(time.monotonic() - start_time, False, "timeout")
            raise PublishTimeoutError(
                f"Publish not acknowledged within {self.publish_timeout_seconds}s"
            ) from exc
        except TransportError:
            self._circuit_breaker.record_failure()
            self._metrics.record_request(time.monotonic() - start_time, False, "transport_error")
            raise
        except (OSError, ConnectionError) as exc:
            self._circuit_breaker.record_failure()
            self._metrics.record_request(time.monotonic() - start_time, False, "network_error")
            raise TransportError(f"Publish failed: {exc}") from exc

        self._circuit_breaker.record_success()
        self._metrics.record_request(time.monotonic() - start_time, True)
        return PublishAck(acknowledged=bool(acknowledged))

    # -- inbound -----------------------------------------------------------------

    async def _verify_frame(self, frame: bytes) -> Message | None:
        self._metrics.frames_received += 1
        try:
            return await asyncio.to_thread(self._codec.decode_and_verify, frame)
        except (CodecError, SignatureInvalidError) as exc:
            self._metrics.frames_dropped += 1
            logger.debug("Dropped invalid frame: %s", exc)
            return None
        except Exception as exc:
            self._metrics.frames_dropped += 1
            logger.warning("Dropped frame that failed verification: %r", exc)
            return None

    async def inbound(self) -> AsyncIterator[Message]:
        """Yield verified messages forever, resubscribing across reconnects."""
        while not self._closed:
            try:
                stream = await self._transport.subscribe(self.topic)
                self._set_connected(True)
                async for frame in stream:
                    message = await self._verify_frame(frame)
                    if message is not None:
                        yield message
                logger.info("Subscription ended; resubscribing")
            except TransportError as exc:
                logger.warning("Subscription interrupted: %s", exc)
            except (OSError, ConnectionError) as exc:
                logger.warning("Subscription network error: %s", exc)
            except Exception as exc:
                logger.error("Subscription failed unexpectedly: %s", exc, exc_info=True)
            self._set_connected(False)
            if self._closed:
                return
            await asyncio.sleep(self.reconnect_delay_seconds)

    async def query_history(self, start_ms: int, end_ms: int) -> AsyncIterator[Message]:
        """Yield verified messages stored in ``[start_ms, end_ms]``.

        Frames are verified in parallel batches; order within the result is
        the transport's order.
        """
        batch: list[bytes] = []
        async for frame in self._transport.query_history(self.topic, start_ms, end_ms):
            batch.append(frame)
            if len(batch) >= HISTORY_VERIFY_BATCH:
                for message in await self._verify_batch(batch):
                    yield message
                batch = []
        if batch:
            for message in await self._verify_batch(batch):
                yield message

    async def _verify_batch(self, frames: list[bytes]) -> list[Message]:
        results = await asyncio.gather(*(self._verify_frame(frame) for frame in frames))
        return [message for message in results if message is not None]

    # -- monitoring --------------------------------------------------------------

    def get_metrics(self) -> dict[str, object]:
        """Return publish and inbound metrics for monitoring."""
        return {
            "publish": {
                "request_count": self._metrics.request_count,
                "success_count": self._metrics.success_count,
                "error_count": self._metrics.error_count,
                "success_rate": self._metrics.get_success_rate(),
                "average_response_time": self._metrics.get_average_response_time(),
                "max_response_time": self._metrics.max_response_time,
                "error_counts_by_type": dict(self._metrics.error_counts_by_type),
            },
            "inbound": {
                "frames_received": self._metrics.frames_received,
                "frames_dropped": self._metrics.frames_dropped,
            },
            "circuit_breaker": {"state": self._circuit_breaker.get_state().value},
        }

    def health_check(self) -> dict[str, object]:
        return {
            "status": "connected" if self._connected else "disconnected",
            "topic": self.topic,
            "circuit_breaker": self._circuit_breaker.get_state().value,
        }
