import asyncio

from screencast.errors import StoreUnavailable
from screencast.signaling.candidates import CandidateBuffer
from screencast.signaling.messages import IceCandidate, iter_mailbox
from screencast.signaling.store import InMemorySignalStore

MAILBOX = "rooms/ABCDE/host_ice"


class FakeClock:
    def __init__(self, value: int = 1_000) -> None:
        self.value = value

    def now(self) -> int:
        return self.value


class FlakyStore(InMemorySignalStore):
    """Fails the first ``failures`` writes."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.attempts = []

    async def put(self, path, value) -> None:
        self.attempts.append(path)
        if self.failures > 0:
            self.failures -= 1
            raise StoreUnavailable("offline")
        await super().put(path, value)


def _candidate(index: int) -> IceCandidate:
    return IceCandidate(
        candidate=f"candidate:{index} 1 udp 2130706431 10.0.0.1 {5000 + index} typ host",
        sdp_mid="0",
        sdp_mline_index=0,
    )


def test_keys_increase_even_when_clock_stalls_or_goes_back() -> None:
    clock = FakeClock(1_000)
    buffer = CandidateBuffer(InMemorySignalStore(), MAILBOX, clock=clock.now)

    keys = [buffer.next_key() for _ in range(3)]
    clock.value = 500
    keys.append(buffer.next_key())
    clock.value = 5_000
    keys.append(buffer.next_key())

    assert keys == [1_000, 1_001, 1_002, 1_003, 5_000]


def test_candidates_are_published_in_push_order() -> None:
    clock = FakeClock()

    async def scenario():
        store = InMemorySignalStore()
        buffer = CandidateBuffer(store, MAILBOX, clock=clock.now)
        buffer.start()
        for index in range(4):
            buffer.push(_candidate(index))
        buffer.push(None)
        await buffer.flush()
        await buffer.close()
        return store, buffer

    store, buffer = asyncio.run(scenario())
    entries = list(iter_mailbox(asyncio.run(store.get(MAILBOX))))
    assert [value["candidate"] for _, value in entries] == [_candidate(i).candidate for i in range(4)]
    assert buffer.ended is True
    assert buffer.published == [f"{MAILBOX}/{key}" for key, _ in entries]


def test_pushes_after_end_of_gathering_are_ignored() -> None:
    async def scenario():
        store = InMemorySignalStore()
        buffer = CandidateBuffer(store, MAILBOX, clock=FakeClock().now)
        buffer.start()
        buffer.push(_candidate(0))
        buffer.push(None)
        buffer.push(_candidate(1))
        buffer.push(None)
        await buffer.flush()
        await buffer.close()
        return await store.get(MAILBOX)

    entries = asyncio.run(scenario())
    assert len(entries) == 1


def test_failed_writes_are_retried_under_the_same_key() -> None:
    async def scenario():
        store = FlakyStore(failures=2)
        buffer = CandidateBuffer(store, MAILBOX, retry_interval=0, clock=FakeClock(42).now)
        buffer.start()
        buffer.push(_candidate(0))
        buffer.push(_candidate(1))
        await buffer.flush()
        await buffer.close()
        return store, buffer

    store, buffer = asyncio.run(scenario())
    assert store.attempts == [f"{MAILBOX}/42", f"{MAILBOX}/42", f"{MAILBOX}/42", f"{MAILBOX}/43"]
    assert buffer.published == [f"{MAILBOX}/42", f"{MAILBOX}/43"]
    assert buffer.pending == 0


def test_close_without_start_is_a_no_op() -> None:
    async def scenario():
        buffer = CandidateBuffer(InMemorySignalStore(), MAILBOX)
        await buffer.close()
        await buffer.close()

    asyncio.run(scenario())


class BrokenStore(InMemorySignalStore):
    """Raises an unexpected error on the first write."""

    def __init__(self) -> None:
        super().__init__()
        self.broken = True

    async def put(self, path, value) -> None:
        if self.broken:
            self.broken = False
            raise RuntimeError("disk full")
        await super().put(path, value)


def test_unexpected_write_error_does_not_stop_publishing(caplog) -> None:
    async def scenario():
        store = BrokenStore()
        buffer = CandidateBuffer(store, MAILBOX, retry_interval=0, clock=FakeClock(7).now)
        buffer.start()
        buffer.push(_candidate(0))
        buffer.push(_candidate(1))
        await asyncio.wait_for(buffer.flush(), 1.0)
        await buffer.close()
        return buffer

    buffer = asyncio.run(scenario())
    assert buffer.published == [f"{MAILBOX}/8"]
    assert buffer.pending == 0
    assert any("Failed to publish candidate" in record.getMessage() for record in caplog.records)
