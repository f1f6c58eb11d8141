import asyncio

import pytest

from screencast.errors import (
    InvalidRoomCode,
    InvalidTransition,
    NegotiationFailed,
    RoomNotFound,
    SessionBusy,
    StoreUnavailable,
)
from screencast.rtc.loopback import LoopbackNetwork, LoopbackTrack
from screencast.rtc.media import MediaStream
from screencast.signaling.coordinator import ALLOWED_TRANSITIONS, SessionState, SignalingCoordinator
from screencast.signaling.messages import Role
from screencast.signaling.store import InMemorySignalStore

CODE = "ABCDE"


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def flush(*coordinators: SignalingCoordinator) -> None:
    await settle()
    for coordinator in coordinators:
        if coordinator.candidates is not None:
            await coordinator.candidates.flush()
    await settle()


def _host(store, network, **kwargs) -> SignalingCoordinator:
    return SignalingCoordinator(store, network.create_engine, code_factory=lambda: CODE, **kwargs)


def test_host_and_viewer_connect_through_the_store() -> None:
    async def scenario():
        store = InMemorySignalStore()
        network = LoopbackNetwork()
        host = _host(store, network)
        viewer = SignalingCoordinator(store, network.create_engine)

        code = await host.start_host(MediaStream([LoopbackTrack()]))
        await flush(host)
        host_engine = network.created[0]
        for _ in range(3):
            await host.poll_once()
        waiting = (host.state, host_engine.remote_description_calls, host.poll_count)

        await viewer.join_viewer(code.lower())
        viewer_engine = network.created[1]
        await flush(viewer)
        await host.poll_once()
        await viewer.poll_once()
        await settle()
        for _ in range(3):
            await host.poll_once()
            await viewer.poll_once()

        result = {
            "code": code,
            "waiting": waiting,
            "host_state": host.state,
            "viewer_state": viewer.state,
            "answer_calls": host_engine.remote_description_calls,
            "offer_calls": viewer_engine.remote_description_calls,
            "host_candidate_calls": host_engine.candidate_calls,
            "viewer_candidate_calls": viewer_engine.candidate_calls,
            "host_ingested": len(host.ingested),
            "media_attached": viewer.session.media_attached,
            "received": len(viewer_engine.received_tracks),
        }
        await viewer.close()
        await host.close()
        result["closed"] = (host.state, viewer.state, host_engine.closed, viewer_engine.closed)
        result["leftover"] = store.dump()
        return result

    result = asyncio.run(scenario())
    assert result["code"] == CODE
    assert result["waiting"] == (SessionState.OFFERING, 0, 3)
    assert result["host_state"] is SessionState.CONNECTED
    assert result["viewer_state"] is SessionState.CONNECTED
    assert result["answer_calls"] == 1
    assert result["offer_calls"] == 1
    # Re-reading the same mailbox entries on later polls must not re-add them.
    assert result["host_candidate_calls"] == 2
    assert result["viewer_candidate_calls"] == 2
    assert result["host_ingested"] == 2
    assert result["media_attached"] is True
    assert result["received"] == 1
    assert result["closed"] == (SessionState.CLOSED, SessionState.CLOSED, True, True)
    assert result["leftover"] == {}


def test_candidates_written_before_the_answer_are_ingested_after_it() -> None:
    early = {"candidate": "candidate:9 1 udp 1 10.0.0.2 6000 typ host ufrag early", "sdpMid": "0"}

    async def scenario():
        store = InMemorySignalStore()
        network = LoopbackNetwork()
        host = _host(store, network)
        await host.start_host()
        host_engine = network.created[0]
        await store.put(f"rooms/{CODE}/viewer_ice/1", early)
        for _ in range(3):
            await host.poll_once()
        while_offering = host_engine.candidate_calls

        viewer = SignalingCoordinator(store, network.create_engine)
        await viewer.join_viewer(CODE)
        await flush(viewer)
        await host.poll_once()
        after_answer = host_engine.candidate_calls

        await store.put(f"rooms/{CODE}/viewer_ice/1", early)
        await host.poll_once()
        after_rewrite = host_engine.candidate_calls
        applied = list(host_engine.applied_candidates)

        await viewer.close()
        await host.close()
        return while_offering, after_answer, after_rewrite, applied

    while_offering, after_answer, after_rewrite, applied = asyncio.run(scenario())
    assert while_offering == 0
    assert after_answer == 3
    assert after_rewrite == 3
    assert applied[0] == early["candidate"]


def test_missing_room_fails_without_creating_an_engine() -> None:
    async def scenario():
        store = InMemorySignalStore()
        network = LoopbackNetwork()
        viewer = SignalingCoordinator(store, network.create_engine)
        with pytest.raises(RoomNotFound) as info:
            await viewer.join_viewer(" zzzzz ")
        state = viewer.state
        await viewer.close()
        return info.value, state, network.created, viewer.state

    error, state, created, final = asyncio.run(scenario())
    assert error.code == "ZZZZZ"
    assert state is SessionState.FAILED
    assert created == []
    assert final is SessionState.CLOSED


def test_unreadable_store_is_reported_as_missing_room() -> None:
    class DownStore(InMemorySignalStore):
        async def get(self, path):
            raise StoreUnavailable("offline")

    async def scenario():
        network = LoopbackNetwork()
        viewer = SignalingCoordinator(DownStore(), network.create_engine)
        try:
            with pytest.raises(RoomNotFound) as info:
                await viewer.join_viewer(CODE)
        finally:
            await viewer.close()
        return info.value, network.created

    error, created = asyncio.run(scenario())
    assert isinstance(error.__cause__, StoreUnavailable)
    assert created == []


def test_invalid_code_is_rejected_before_any_state_change() -> None:
    async def scenario():
        network = LoopbackNetwork()
        viewer = SignalingCoordinator(InMemorySignalStore(), network.create_engine)
        with pytest.raises(InvalidRoomCode):
            await viewer.join_viewer("AB/CD")
        return viewer.state, network.created

    state, created = asyncio.run(scenario())
    assert state is SessionState.IDLE
    assert created == []


def test_malformed_offer_is_a_negotiation_failure() -> None:
    async def scenario():
        store = InMemorySignalStore()
        await store.put(f"rooms/{CODE}/offer", {"type": "answer", "sdp": "v=0"})
        network = LoopbackNetwork()
        viewer = SignalingCoordinator(store, network.create_engine)
        try:
            with pytest.raises(NegotiationFailed):
                await viewer.join_viewer(CODE)
            return viewer.state, network.created
        finally:
            await viewer.close()

    state, created = asyncio.run(scenario())
    assert state is SessionState.FAILED
    assert created == []


def test_malformed_answer_is_ignored() -> None:
    async def scenario():
        store = InMemorySignalStore()
        network = LoopbackNetwork()
        host = _host(store, network)
        await host.start_host()
        await store.put(f"rooms/{CODE}/answer", {"type": "answer", "sdp": ""})
        await host.poll_once()
        result = (host.state, network.created[0].remote_description_calls)
        await host.close()
        return result

    assert asyncio.run(scenario()) == (SessionState.OFFERING, 0)


def test_offer_publication_is_retried_on_the_next_poll() -> None:
    class OfferFlakyStore(InMemorySignalStore):
        def __init__(self) -> None:
            super().__init__()
            self.offer_failures = 1

        async def put(self, path, value) -> None:
            if path.endswith("/offer") and self.offer_failures:
                self.offer_failures -= 1
                raise StoreUnavailable("offline")
            await super().put(path, value)

    async def scenario():
        store = OfferFlakyStore()
        host = _host(store, LoopbackNetwork())
        await host.start_host()
        before = await store.get(f"rooms/{CODE}/offer")
        await host.poll_once()
        after = await store.get(f"rooms/{CODE}/offer")
        await host.close()
        return host.state, before, after

    state, before, after = asyncio.run(scenario())
    assert state is SessionState.CLOSED
    assert before is None
    assert after["type"] == "offer"


def test_engine_failure_moves_to_failed_and_calls_terminal_hook_once() -> None:
    failures = []

    async def scenario():
        network = LoopbackNetwork()
        host = _host(InMemorySignalStore(), network, on_terminal=failures.append)
        await host.start_host()
        network.created[0].fail()
        await settle()
        network.created[0].fail()
        await settle()
        state = host.state
        await host.close()
        return state, host.state

    state, final = asyncio.run(scenario())
    assert state is SessionState.FAILED
    assert final is SessionState.CLOSED
    assert len(failures) == 1
    assert isinstance(failures[0], NegotiationFailed)


def test_coordinator_is_single_use() -> None:
    async def scenario():
        host = _host(InMemorySignalStore(), LoopbackNetwork())
        await host.start_host()
        with pytest.raises(SessionBusy):
            await host.start_host()
        await host.close()
        await host.close()
        with pytest.raises(SessionBusy):
            await host.join_viewer(CODE)
        await host.poll_once()
        return host.state, host.poll_count

    assert asyncio.run(scenario()) == (SessionState.CLOSED, 0)


def test_close_keeps_room_when_cleanup_disabled() -> None:
    async def scenario():
        store = InMemorySignalStore()
        host = _host(store, LoopbackNetwork(), cleanup_on_stop=False)
        await host.start_host()
        await flush(host)
        await host.close()
        return await store.get(f"rooms/{CODE}/offer")

    assert asyncio.run(scenario())["type"] == "offer"


def test_observers_see_snapshot_and_every_transition() -> None:
    changes = []

    async def scenario():
        host = _host(InMemorySignalStore(), LoopbackNetwork())
        token = host.subscribe(changes.append)
        await host.start_host()
        await host.close()
        host.unsubscribe(token)

    asyncio.run(scenario())
    assert [(c.previous, c.current) for c in changes] == [
        (None, SessionState.IDLE),
        (SessionState.IDLE, SessionState.OFFERING),
        (SessionState.OFFERING, SessionState.CLOSED),
    ]
    assert changes[1].role is Role.HOST
    assert changes[1].code == CODE


def test_transition_table() -> None:
    non_closed = [state for state in SessionState if state is not SessionState.CLOSED]
    for state in non_closed:
        assert SessionState.CLOSED in ALLOWED_TRANSITIONS[state]
        if state is not SessionState.FAILED:
            assert SessionState.FAILED in ALLOWED_TRANSITIONS[state]
    assert ALLOWED_TRANSITIONS[SessionState.CLOSED] == frozenset()
    assert SessionState.OFFERING not in ALLOWED_TRANSITIONS[SessionState.CONNECTED]
    assert SessionState.CONNECTED not in ALLOWED_TRANSITIONS[SessionState.OFFERING]


def test_illegal_transition_raises() -> None:
    async def scenario():
        host = _host(InMemorySignalStore(), LoopbackNetwork())
        await host.start_host()
        try:
            async with host._lock:
                host._transition_locked(SessionState.CONNECTED)
        finally:
            await host.close()

    with pytest.raises(InvalidTransition):
        asyncio.run(scenario())


def test_poll_helpers_do_nothing_before_a_session_is_opened() -> None:
    async def scenario():
        store = InMemorySignalStore()
        coordinator = _host(store, LoopbackNetwork())
        async with coordinator._lock:
            await coordinator._poll_answer_locked()
            await coordinator._ingest_candidates_locked()
        return coordinator.state, store.dump()

    state, contents = asyncio.run(scenario())
    assert state is SessionState.IDLE
    assert not contents
