"""Run a host and a viewer in one process over the loopback engine.

This utility walks both peers through the whole signaling exchange (room
code, offer, answer, trickled candidates) without touching a camera, a screen
or the network, and prints every state change along the way.

Examples
--------
Use a private in-memory store::

    python scripts/demo_loopback.py

Rendezvous through a store started with ``screencast serve-store``::

    python scripts/demo_loopback.py --store-url http://127.0.0.1:8090

Simulate the platform revoking the capture after two seconds::

    python scripts/demo_loopback.py --end-capture-after 2
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Iterable

from screencast.config import SessionConfig
from screencast.rtc.loopback import CollectingSink, LoopbackNetwork, SyntheticScreenSource
from screencast.session import SessionSupervisor
from screencast.signaling.coordinator import SessionState, StateChange
from screencast.signaling.store import HttpSignalStore, InMemorySignalStore, SignalStore
from screencast.utils.logging import configure_logging


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Screencast loopback demo")
    parser.add_argument("--store-url", default=None, help="use an HTTP signal store instead of memory")
    parser.add_argument("--poll-interval", type=float, default=0.2, help="seconds between store polls")
    parser.add_argument(
        "--duration",
        type=float,
        default=1.0,
        help="seconds to stay connected before stopping both peers",
    )
    parser.add_argument(
        "--end-capture-after",
        type=float,
        default=0.0,
        help="end the host capture after this many seconds (0 disables)",
    )
    parser.add_argument("--timeout", type=float, default=10.0, help="give up connecting after this long")
    return parser.parse_args(argv)


def _printer(label: str):
    def _print(change: StateChange) -> None:
        previous = change.previous.value if change.previous is not None else "-"
        suffix = f" ({change.error})" if change.error is not None else ""
        print(f"[{label}] {previous} -> {change.current.value}{suffix}", flush=True)

    return _print


async def _wait_for(supervisor: SessionSupervisor, state: SessionState, timeout: float) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while supervisor.state is not state:
        if loop.time() >= deadline:
            raise TimeoutError(f"still {supervisor.state.value} after {timeout:.1f}s")
        await asyncio.sleep(0.05)


async def run_demo(args: argparse.Namespace) -> int:
    store: SignalStore
    if args.store_url:
        store = HttpSignalStore(args.store_url)
    else:
        store = InMemorySignalStore()
    network = LoopbackNetwork()
    config = SessionConfig(poll_interval=args.poll_interval, ice_servers=[])
    source = SyntheticScreenSource()
    sink = CollectingSink()

    host = SessionSupervisor(store, network.create_engine, media_source=source, config=config)
    viewer = SessionSupervisor(store, network.create_engine, sink=sink, config=config)
    host.subscribe(_printer("host"))
    viewer.subscribe(_printer("viewer"))

    try:
        code = await host.start_host()
        print(f"Room code: {code}", flush=True)
        await viewer.join_viewer(code)
        await _wait_for(host, SessionState.CONNECTED, args.timeout)
        await _wait_for(viewer, SessionState.CONNECTED, args.timeout)
        print(f"Viewer received {len(sink.tracks)} track(s)", flush=True)

        if args.end_capture_after > 0:
            await asyncio.sleep(args.end_capture_after)
            source.streams[-1].mark_ended()
            await _wait_for(host, SessionState.IDLE, args.timeout)
        else:
            await asyncio.sleep(args.duration)
    except TimeoutError as exc:
        print(f"Demo failed: {exc}", file=sys.stderr)
        return 1
    finally:
        await viewer.stop()
        await host.stop()
        await store.aclose()
    return 0


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging()
    return asyncio.run(run_demo(args))


if __name__ == "__main__":
    sys.exit(main())
