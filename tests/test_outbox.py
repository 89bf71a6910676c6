# tests/test_outbox.py
from __future__ import annotations

import asyncio
import random
import threading
from unittest.mock import AsyncMock

import pytest
from support import FakeClock, Signer, eventually

from chorus_sync.core.errors import CircuitOpenError, PublishTimeoutError, TransportError
from chorus_sync.repositories import OutboxRepository
from chorus_sync.services.codec import MessageCodec
from chorus_sync.services.outbox import Outbox, OutboxStatus, PublishAck
from chorus_sync.services.relay import MemoryRelay
from chorus_sync.services.transport import CircuitBreaker, TransportGateway


def _outbox(clock: FakeClock, publisher: AsyncMock, **kwargs) -> Outbox:
    options = {
        "base_backoff_seconds": 1.0,
        "max_backoff_seconds": 8.0,
        "jitter_ratio": 0.0,
        "max_attempts": 3,
        "tick_seconds": 0.01,
    }
    options.update(kwargs)
    return Outbox(publisher, clock=clock, **options)


@pytest.fixture()
def message(alice: Signer):
    return alice.cell()


def test_backoff_is_exponential_and_capped(clock: FakeClock) -> None:
    outbox = _outbox(clock, AsyncMock())
    assert [outbox.backoff_delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 8.0]

    jittered = _outbox(clock, AsyncMock(), jitter_ratio=0.2, rng=random.Random(7))
    for attempt in range(1, 6):
        delay = jittered.backoff_delay(attempt)
        assert 0.0 <= delay <= 8.0


@pytest.mark.asyncio
async def test_acknowledged_publish_confirms_and_prunes(clock: FakeClock, message) -> None:
    publisher = AsyncMock(return_value=PublishAck(acknowledged=True))
    outbox = _outbox(clock, publisher)
    confirmed = []
    outbox.on_confirmed(confirmed.append)

    entry = outbox.enqueue(message)
    assert outbox.enqueue(message) is entry
    assert outbox.pending_count == 1

    assert await outbox.flush() == 1
    publisher.assert_awaited_once_with(message)
    assert outbox.get(message.id) is None
    assert outbox.pending_count == 0
    assert [e.message_id for e in confirmed] == [message.id]


@pytest.mark.asyncio
async def test_timeouts_exhaust_attempts_then_abandon(clock: FakeClock, message) -> None:
    publisher = AsyncMock(side_effect=PublishTimeoutError("no ack"))
    outbox = _outbox(clock, publisher)
    abandoned = []
    outbox.on_abandoned(abandoned.append)
    outbox.enqueue(message)

    await outbox.flush()
    entry = outbox.get(message.id)
    assert entry.status == OutboxStatus.PENDING
    assert entry.attempt_count == 1

    # Not due again until the backoff has elapsed.
    assert await outbox.flush() == 0
    clock.advance(1.0)
    await outbox.flush()
    assert entry.attempt_count == 2
    clock.advance(2.0)
    await outbox.flush()

    assert entry.status == OutboxStatus.ABANDONED
    assert entry.attempt_count == 3
    assert [e.message_id for e in abandoned] == [message.id]
    assert outbox.pending_count == 0
    assert publisher.await_count == 3

    clock.advance(60)
    assert await outbox.flush() == 0


@pytest.mark.asyncio
async def test_transport_errors_park_entry_as_failed(clock: FakeClock, message) -> None:
    publisher = AsyncMock(side_effect=[TransportError("down"), PublishAck(acknowledged=True)])
    outbox = _outbox(clock, publisher)
    outbox.enqueue(message)

    await outbox.flush()
    entry = outbox.get(message.id)
    assert entry.status == OutboxStatus.FAILED
    assert entry.last_error == "down"

    clock.advance(1.0)
    await outbox.flush()
    assert outbox.get(message.id) is None


@pytest.mark.asyncio
async def test_failed_entries_return_to_pending_when_due(clock: FakeClock, message) -> None:
    publisher = AsyncMock(side_effect=TransportError("down"))
    outbox = _outbox(clock, publisher)
    outbox.enqueue(message)
    await outbox.flush()
    entry = outbox.get(message.id)
    assert entry.status == OutboxStatus.FAILED

    outbox.set_connected(False)
    clock.advance(0.5)
    await outbox.flush()
    assert entry.status == OutboxStatus.FAILED
    clock.advance(0.5)
    assert await outbox.flush() == 0
    assert entry.status == OutboxStatus.PENDING
    assert entry.attempt_count == 1


@pytest.mark.asyncio
async def test_unexpected_publish_errors_count_as_failed_attempts(
    clock: FakeClock, message
) -> None:
    publisher = AsyncMock(side_effect=[ValueError("bad body"), PublishAck(acknowledged=True)])
    outbox = _outbox(clock, publisher)
    outbox.enqueue(message)

    await outbox.flush()
    entry = outbox.get(message.id)
    assert entry.status == OutboxStatus.FAILED
    assert entry.attempt_count == 1
    assert entry.last_error == "ValueError: bad body"

    clock.advance(1.0)
    await outbox.flush()
    assert outbox.get(message.id) is None


@pytest.mark.asyncio
async def test_unacknowledged_publish_waits_for_observation(clock: FakeClock, message) -> None:
    publisher = AsyncMock(return_value=PublishAck(acknowledged=False))
    outbox = _outbox(clock, publisher)
    outbox.enqueue(message)

    await outbox.flush()
    entry = outbox.get(message.id)
    assert entry.status == OutboxStatus.SENDING
    assert entry.awaiting_observation

    assert outbox.mark_observed(message.id)
    assert outbox.get(message.id) is None
    clock.advance(10)
    assert await outbox.flush() == 0
    publisher.assert_awaited_once()


@pytest.mark.asyncio
async def test_unobserved_messages_are_republished(clock: FakeClock, message) -> None:
    publisher = AsyncMock(return_value=PublishAck(acknowledged=False))
    outbox = _outbox(clock, publisher)
    outbox.enqueue(message)

    await outbox.flush()
    clock.advance(1.0)
    await outbox.flush()
    clock.advance(2.0)
    await outbox.flush()
    assert publisher.await_count == 3

    clock.advance(4.0)
    await outbox.flush()
    assert outbox.get(message.id).status == OutboxStatus.ABANDONED
    assert publisher.await_count == 3


@pytest.mark.asyncio
async def test_disconnect_pauses_without_consuming_attempts(clock: FakeClock, message) -> None:
    publisher = AsyncMock(return_value=PublishAck(acknowledged=True))
    outbox = _outbox(clock, publisher)
    outbox.enqueue(message)

    outbox.set_connected(False)
    assert await outbox.flush() == 0
    publisher.assert_not_awaited()

    entry = outbox.get(message.id)
    entry.status = OutboxStatus.SENDING
    outbox.set_connected(True)
    outbox.set_connected(False)
    assert entry.status == OutboxStatus.PENDING
    assert entry.attempt_count == 0

    outbox.set_connected(True)
    assert await outbox.flush() == 1
    assert outbox.get(message.id) is None


@pytest.mark.asyncio
async def test_abandoned_entries_can_be_retried_or_dismissed(
    clock: FakeClock, alice: Signer
) -> None:
    publisher = AsyncMock(side_effect=TransportError("down"))
    outbox = _outbox(clock, publisher, max_attempts=1)
    first, second = alice.cell("a"), alice.cell("b")
    outbox.enqueue(first)
    outbox.enqueue(second)
    await outbox.flush()
    assert len(outbox.abandoned()) == 2

    publisher.side_effect = None
    publisher.return_value = PublishAck(acknowledged=True)
    assert outbox.retry(first.id)
    assert outbox.dismiss(second.id)
    assert not outbox.dismiss(first.id)

    await outbox.flush()
    assert outbox.entries() == []


@pytest.mark.asyncio
async def test_entries_survive_restart(clock: FakeClock, alice: Signer, session_factory) -> None:
    repository = OutboxRepository(session_factory)
    publisher = AsyncMock(side_effect=PublishTimeoutError("slow"))
    outbox = Outbox(publisher, repository=repository, clock=clock, jitter_ratio=0.0)
    first, second = alice.cell("a"), alice.cell("b")
    outbox.enqueue(first)
    clock.advance(0.001)
    outbox.enqueue(second)
    await outbox.flush()

    restarted = Outbox(AsyncMock(), repository=repository, clock=clock)
    restored = await restarted.restore()
    assert [entry.message_id for entry in restored] == [first.id, second.id]
    assert all(entry.status == OutboxStatus.PENDING for entry in restored)
    assert all(entry.attempt_count == 1 for entry in restored)
    assert restarted.get(first.id).message == first


@pytest.mark.asyncio
async def test_background_loop_sends_queued_messages(clock: FakeClock, message) -> None:
    publisher = AsyncMock(return_value=PublishAck(acknowledged=True))
    outbox = _outbox(clock, publisher)
    await outbox.start()
    try:
        outbox.enqueue(message)
        await eventually(lambda: outbox.get(message.id) is None)
    finally:
        await outbox.stop()
    publisher.assert_awaited_once_with(message)


@pytest.mark.asyncio
async def test_open_circuit_defers_without_spending_attempts(
    clock: FakeClock, alice: Signer
) -> None:
    first, second = alice.cell("a"), alice.cell("b")
    publisher = AsyncMock(
        side_effect=[CircuitOpenError("open"), PublishAck(acknowledged=True)] * 2
    )
    outbox = _outbox(clock, publisher, max_attempts=1)
    outbox.enqueue(first)
    outbox.enqueue(second)

    assert await outbox.flush() == 0
    assert publisher.await_count == 1
    for message in (first, second):
        entry = outbox.get(message.id)
        assert entry.status == OutboxStatus.PENDING
        assert entry.attempt_count == 0
    assert outbox.abandoned() == []

    clock.advance(1.0)
    assert await outbox.flush() == 1
    assert outbox.get(first.id) is None


@pytest.mark.asyncio
async def test_entries_outlive_an_open_circuit(
    clock: FakeClock, alice: Signer
) -> None:
    relay = MemoryRelay(clock)
    gateway = TransportGateway(
        relay.transport(),
        MessageCodec(),
        topic="/chorus/1/forum/json",
        publish_timeout_seconds=0.01,
        circuit_breaker=CircuitBreaker(failure_threshold=2, recovery_timeout=0.3),
    )
    outbox = _outbox(clock, gateway.publish, max_attempts=2)
    messages = [alice.cell(f"c{i}") for i in range(4)]
    for message in messages:
        outbox.enqueue(message)

    relay.hang_publishes = True
    assert await outbox.flush() == 2
    assert [outbox.get(m.id).attempt_count for m in messages] == [1, 1, 0, 0]

    relay.hang_publishes = False
    clock.advance(1.0)
    assert await outbox.flush() == 0
    assert [outbox.get(m.id).attempt_count for m in messages] == [1, 1, 0, 0]
    assert outbox.abandoned() == []

    await asyncio.sleep(0.35)
    clock.advance(1.0)
    await outbox.flush()
    assert outbox.entries() == []
    assert relay.publish_count == 4


@pytest.mark.asyncio
async def test_state_changes_are_written_off_the_event_loop(
    clock: FakeClock, message, session_factory, mocker
) -> None:
    repository = OutboxRepository(session_factory)
    loop_thread = threading.get_ident()
    writer_threads: set[int] = set()
    save, remove = repository.save, repository.remove

    def recording_save(**row) -> None:
        writer_threads.add(threading.get_ident())
        save(**row)

    def recording_remove(message_id: str) -> None:
        writer_threads.add(threading.get_ident())
        remove(message_id)

    mocker.patch.object(repository, "save", side_effect=recording_save)
    mocker.patch.object(repository, "remove", side_effect=recording_remove)
    publisher = AsyncMock(side_effect=[TransportError("down"), PublishAck(acknowledged=True)])
    outbox = _outbox(clock, publisher, repository=repository)

    outbox.enqueue(message)
    await outbox.flush()
    [record] = repository.load_all()
    assert record.status == OutboxStatus.FAILED.value
    assert record.attempt_count == 1

    clock.advance(1.0)
    await outbox.flush()
    assert repository.load_all() == []
    assert writer_threads and loop_thread not in writer_threads
