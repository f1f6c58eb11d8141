"""
Outbound candidate publication.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Callable, List, Optional

from ..errors import StoreUnavailable
from .messages import IceCandidate
from .store import SignalStore

LOG = logging.getLogger(__name__)

_END = object()

ClockCallable = Callable[[], int]


def _wall_clock_us() -> int:
    return time.time_ns() // 1000


class CandidateBuffer:
    """
    Publish locally gathered candidates to an outbound mailbox.

    Candidates are written in the order they were pushed.  Each one gets its
    key when it reaches the head of the queue, ``max(clock(), last + 1)``, and
    keeps it across write retries, so a candidate is never dropped and never
    appears under two keys.  ``None`` marks the end of gathering; it is not
    written and anything pushed after it is ignored.
    """

    def __init__(
        self,
        store: SignalStore,
        mailbox: str,
        *,
        retry_interval: float = 2.0,
        clock: Optional[ClockCallable] = None,
    ) -> None:
        self.store = store
        self.mailbox = mailbox.rstrip("/")
        self.retry_interval = max(0.0, float(retry_interval))
        self._clock: ClockCallable = clock if clock is not None else _wall_clock_us
        self._queue: asyncio.Queue = asyncio.Queue()
        self._last_key = 0
        self._ended = False
        self._task: Optional[asyncio.Task] = None
        self.published: List[str] = []

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def next_key(self) -> int:
        key = max(int(self._clock()), self._last_key + 1)
        self._last_key = key
        return key

    def push(self, candidate: Optional[IceCandidate]) -> None:
        if self._ended:
            LOG.debug("Ignoring candidate pushed after end of gathering on %s", self.mailbox)
            return
        if candidate is None:
            self._ended = True
            self._queue.put_nowait(_END)
            return
        self._queue.put_nowait(candidate)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._publish_loop())

    async def flush(self) -> None:
        """Wait until every candidate pushed so far has been written."""

        await self._queue.join()

    async def close(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _publish(self, candidate: IceCandidate) -> None:
        path = f"{self.mailbox}/{self.next_key()}"
        payload = candidate.to_dict()
        while True:
            try:
                await self.store.put(path, payload)
            except StoreUnavailable as exc:
                LOG.warning("Candidate write to %s failed (%s); retrying", path, exc)
                await asyncio.sleep(self.retry_interval)
                continue
            self.published.append(path)
            return

    async def _publish_loop(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _END:
                    LOG.debug("Candidate gathering finished for %s", self.mailbox)
                    continue
                await self._publish(item)
            except Exception:
                LOG.exception("Failed to publish candidate to %s", self.mailbox)
            finally:
                self._queue.task_done()


__all__ = ["CandidateBuffer"]
