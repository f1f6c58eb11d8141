"""
Signal store clients.

The signaling layer only needs write-a-value-at-a-path and
read-a-value-at-a-path.  Reading a collection path returns every child keyed by
its last path segment, which is how mailboxes are polled.
"""

from __future__ import annotations

import abc
import json
from typing import Any, Dict, List, Optional

import httpx

from ..errors import StoreUnavailable


def split_path(path: str) -> List[str]:
    parts = [part for part in str(path or "").strip().split("/") if part]
    if not parts:
        raise ValueError("store path must not be empty")
    return parts


def _copy(value: Any) -> Any:
    # JSON round-trip keeps the in-memory store honest about what a remote
    # store could carry.
    return json.loads(json.dumps(value))


class SignalStore(abc.ABC):
    """Path-addressed key/value store used as the signaling rendezvous."""

    @abc.abstractmethod
    async def put(self, path: str, value: Any) -> None:
        """Overwrite ``path`` with ``value``; raise :class:`StoreUnavailable` on failure."""

    @abc.abstractmethod
    async def get(self, path: str) -> Optional[Any]:
        """Return the value at ``path`` or ``None`` when absent."""

    @abc.abstractmethod
    async def delete(self, path: str) -> None:
        """Remove ``path`` and everything below it."""

    async def aclose(self) -> None:
        return None


class InMemorySignalStore(SignalStore):
    """
    Process-local store backed by a nested dict.

    Writing ``None`` removes the entry, matching the REST dialect.
    """

    def __init__(self) -> None:
        self._root: Dict[str, Any] = {}
        self.writes = 0
        self.reads = 0

    def _put_sync(self, path: str, value: Any) -> None:
        parts = split_path(path)
        if value is None:
            self._delete_sync(path)
            return
        node = self._root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = _copy(value)

    def _get_sync(self, path: str) -> Optional[Any]:
        node: Any = self._root
        for part in split_path(path):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return _copy(node)

    def _delete_sync(self, path: str) -> None:
        parts = split_path(path)
        trail = []
        node: Any = self._root
        for part in parts[:-1]:
            if not isinstance(node, dict) or part not in node:
                return
            trail.append((node, part))
            node = node[part]
        if isinstance(node, dict):
            node.pop(parts[-1], None)
        # Drop parents left empty so reads of them return None again.
        for parent, key in reversed(trail):
            if parent[key] == {}:
                del parent[key]

    async def put(self, path: str, value: Any) -> None:
        self.writes += 1
        self._put_sync(path, value)

    async def get(self, path: str) -> Optional[Any]:
        self.reads += 1
        return self._get_sync(path)

    async def delete(self, path: str) -> None:
        self._delete_sync(path)

    def dump(self) -> dict:
        return _copy(self._root)


class HttpSignalStore(SignalStore):
    """
    Client for stores speaking the Firebase Realtime Database REST dialect::

        PUT    {base_url}/{path}.json   body: JSON value
        GET    {base_url}/{path}.json   -> JSON value or null
        DELETE {base_url}/{path}.json

    ``create_store_app`` in :mod:`screencast.api.server` serves the same
    dialect for self-hosted rendezvous.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        auth_token: Optional[str] = None,
    ) -> None:
        base = str(base_url or "").strip()
        if not base:
            raise ValueError("store base_url is required")
        self.base_url = base.rstrip("/")
        self._params = {"auth": auth_token} if auth_token else None
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
            transport=transport,
            headers={"User-Agent": "screencast/1.0"},
        )

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{'/'.join(split_path(path))}.json"

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = self._url(path)
        try:
            response = await self._client.request(method, url, params=self._params, **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise StoreUnavailable(f"{method} {path} failed: {exc}") from exc
        return response

    async def put(self, path: str, value: Any) -> None:
        await self._request("PUT", path, content=json.dumps(value))

    async def get(self, path: str) -> Optional[Any]:
        response = await self._request("GET", path)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise StoreUnavailable(f"GET {path} returned invalid JSON") from exc

    async def delete(self, path: str) -> None:
        await self._request("DELETE", path)

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["HttpSignalStore", "InMemorySignalStore", "SignalStore", "split_path"]
