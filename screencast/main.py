"""
Command line entrypoint.

``screencast host`` shares this machine's screen and prints the room code,
``screencast join CODE`` watches a shared screen, ``screencast serve`` exposes
the same operations through the local control API and ``screencast
serve-store`` runs a self-hosted signal store both peers can point at.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import Optional

from .config import SessionConfig, load_config
from .errors import MediaSourceEnded, SessionError
from .session import SessionSupervisor
from .signaling.coordinator import SessionState, StateChange
from .signaling.store import HttpSignalStore
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


def build_supervisor(config: SessionConfig, *, record: Optional[str] = None) -> SessionSupervisor:
    """Wire the HTTP store, the aiortc engine and FFmpeg capture together."""

    from .rtc.aiortc_engine import AiortcPeerEngine
    from .rtc.capture import RecorderSink, ScreenCaptureSource

    if not config.store_url:
        raise ValueError("no signal store configured; pass --store-url or set SCREENCAST_STORE_URL")
    store = HttpSignalStore(config.store_url, timeout=config.request_timeout)
    source = ScreenCaptureSource(
        device=config.capture_device,
        format=config.capture_format,
        framerate=config.capture_framerate,
    )
    ice_servers = list(config.ice_servers)
    return SessionSupervisor(
        store,
        lambda: AiortcPeerEngine(ice_servers=ice_servers),
        media_source=source,
        sink=RecorderSink(record),
        config=config,
    )


async def run_session(supervisor: SessionSupervisor, code: Optional[str] = None) -> int:
    """
    Host (``code`` is ``None``) or join a room and block until the session
    ends or the process is interrupted.  Returns the process exit status.
    """

    finished = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _watch(change: StateChange) -> None:
        if change.previous is None:
            return
        LOG.info("Session %s", change.current.value)
        if change.current is SessionState.IDLE:
            finished.set()

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, stopping session...", signum)
        loop.call_soon_threadsafe(finished.set)

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    token = supervisor.subscribe(_watch)
    try:
        if code is None:
            room = await supervisor.start_host()
            print(f"Room code: {room}", flush=True)
        else:
            await supervisor.join_viewer(code)
        await finished.wait()
    except SessionError as exc:
        LOG.error("%s", exc)
        return 1
    finally:
        supervisor.unsubscribe(token)
        await supervisor.stop()
        await supervisor.store.aclose()

    error = supervisor.last_error
    if error is not None and not isinstance(error, MediaSourceEnded):
        LOG.error("Session ended: %s", error)
        return 1
    return 0


async def serve(app, host: str = "127.0.0.1", port: int = 8080) -> None:
    """Run a FastAPI application under uvicorn inside the current loop."""

    import uvicorn

    server_config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_config=None,
        log_level="info",
        reload=False,
    )
    server = uvicorn.Server(config=server_config)
    await server.serve()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Peer-to-peer screen sharing")
    parser.add_argument("--profile", default=None, help="session profile to load")
    parser.add_argument("--store-url", default=None, help="base URL of the signal store")
    parser.add_argument("--log-level", default=None, help="log level (default: SCREENCAST_LOG_LEVEL or INFO)")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("host", help="share this screen and print the room code")

    join = commands.add_parser("join", help="watch the screen shared under CODE")
    join.add_argument("code", help="room code printed by the host")
    join.add_argument("--record", default=None, help="write the received stream to this file")

    api = commands.add_parser("serve", help="run the local control API")
    api.add_argument("--host", default="127.0.0.1", help="bind host for the API server")
    api.add_argument("--port", type=int, default=8080, help="bind port for the API server")
    api.add_argument("--record", default=None, help="write received streams to this file")

    store = commands.add_parser("serve-store", help="run a self-hosted signal store")
    store.add_argument("--host", default="0.0.0.0", help="bind host for the store")
    store.add_argument("--port", type=int, default=8090, help="bind port for the store")
    return parser.parse_args(argv)


def run(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "serve-store":
        from .api.server import create_store_app

        try:
            asyncio.run(serve(create_store_app(), host=args.host, port=args.port))
        except KeyboardInterrupt:
            LOG.info("Store interrupted by user.")
        return 0

    try:
        config = load_config(args.profile, store_url=args.store_url)
        supervisor = build_supervisor(config, record=getattr(args, "record", None))
    except ValueError as exc:
        LOG.error("%s", exc)
        return 2

    if args.command == "serve":
        from .api.server import create_app

        try:
            asyncio.run(serve(create_app(supervisor, config=config), host=args.host, port=args.port))
        except KeyboardInterrupt:
            LOG.info("Control API interrupted by user.")
        return 0

    code = args.code if args.command == "join" else None
    try:
        return asyncio.run(run_session(supervisor, code))
    except KeyboardInterrupt:
        LOG.info("Session interrupted by user.")
        return 130


if __name__ == "__main__":
    raise SystemExit(run())
