"""
Realtime document store used for chat persistence.

Layout:
    users/<userId>/chats/<sessionId>/<messageId> = {llm_response, query_user, timestamps, llm_thinking}
    users/<userId>/financial_summary            = <string>

watch(path) is an async iterator of FULL snapshots of the node at `path`:
the first item is the current value and every later item is the whole node
again after a change (never a diff). Failures surface as StoreError raised
from the iterator; callers decide whether to reconnect.

Two implementations:
- FirebaseRealtimeStore : Firebase Realtime Database REST + event-stream API
- MemoryRealtimeStore   : in-process tree, used for tests and local runs
"""

import asyncio
import copy
import json
import logging
import os
from collections.abc import AsyncIterator
from typing import Any

import httpx
from dotenv import load_dotenv

from services.errors import StoreError
from services.sse import aparse_events

load_dotenv()

logger = logging.getLogger(__name__)

REALTIME_STORE_URL = os.getenv("REALTIME_STORE_URL", "")
REALTIME_STORE_AUTH = os.getenv("REALTIME_STORE_AUTH", "")


def _split(path: str) -> tuple[str, ...]:
    return tuple(p for p in path.strip("/").split("/") if p)


def user_path(user_id: str) -> str:
    return f"users/{user_id}"


def chat_path(user_id: str, session_id: str) -> str:
    return f"users/{user_id}/chats/{session_id}"


def _read(tree: Any, parts: tuple[str, ...]) -> Any:
    node = tree
    for part in parts:
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def _write(tree: Any, parts: tuple[str, ...], value: Any) -> Any:
    """Return `tree` with `value` placed at `parts`; None deletes the node."""
    if not parts:
        return value
    root = tree if isinstance(tree, dict) else {}
    node = root
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            if value is None:
                return root
            child = {}
            node[part] = child
        node = child
    if value is None:
        node.pop(parts[-1], None)
    else:
        node[parts[-1]] = value
    return root


class RealtimeStore:
    async def get(self, path: str) -> Any:
        raise NotImplementedError

    async def set(self, path: str, value: Any) -> None:
        raise NotImplementedError

    async def update(self, path: str, values: dict[str, Any]) -> None:
        raise NotImplementedError

    def watch(self, path: str) -> AsyncIterator[Any]:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class MemoryRealtimeStore(RealtimeStore):
    """
    Tree held in process memory. Watchers get a deep copy of their node after
    every write that touches it. Unlike Firebase, empty objects are kept.
    """

    def __init__(self, initial: dict | None = None) -> None:
        self._root: Any = copy.deepcopy(initial) if initial else {}
        self._watchers: list[tuple[tuple[str, ...], asyncio.Queue]] = []

    def _snapshot(self, parts: tuple[str, ...]) -> Any:
        return copy.deepcopy(_read(self._root, parts))

    def _notify(self, written: tuple[str, ...]) -> None:
        for parts, queue in self._watchers:
            n = min(len(parts), len(written))
            if parts[:n] == written[:n]:
                queue.put_nowait(self._snapshot(parts))

    @property
    def watcher_count(self) -> int:
        return len(self._watchers)

    async def get(self, path: str) -> Any:
        return self._snapshot(_split(path))

    async def set(self, path: str, value: Any) -> None:
        parts = _split(path)
        self._root = _write(self._root, parts, copy.deepcopy(value))
        self._notify(parts)

    async def update(self, path: str, values: dict[str, Any]) -> None:
        parts = _split(path)
        for key, value in values.items():
            self._root = _write(self._root, parts + _split(key), copy.deepcopy(value))
        self._notify(parts)

    def fail(self, path: str, error: StoreError) -> None:
        """Deliver a store failure to every watcher of `path`."""
        target = _split(path)
        for parts, queue in self._watchers:
            if parts == target:
                queue.put_nowait(error)

    async def watch(self, path: str) -> AsyncIterator[Any]:
        parts = _split(path)
        queue: asyncio.Queue = asyncio.Queue()
        entry = (parts, queue)
        self._watchers.append(entry)
        try:
            yield self._snapshot(parts)
            while True:
                item = await queue.get()
                if isinstance(item, StoreError):
                    raise item
                yield item
        finally:
            self._watchers.remove(entry)


# ---------------------------------------------------------------------------
# Firebase Realtime Database (REST)
# ---------------------------------------------------------------------------

class FirebaseRealtimeStore(RealtimeStore):
    def __init__(
        self,
        base_url: str,
        auth: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._auth = auth
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            timeout=httpx.Timeout(30.0),
            follow_redirects=True,
            transport=transport,
        )

    def _url(self, path: str) -> str:
        return "/".join(_split(path)) + ".json"

    def _params(self) -> dict[str, str]:
        return {"auth": self._auth} if self._auth else {}

    async def _send(self, method: str, path: str, body: Any = None) -> Any:
        try:
            resp = await self._client.request(
                method, self._url(path), params=self._params(),
                content=None if method == "GET" else json.dumps(body),
            )
        except httpx.HTTPError as exc:
            raise StoreError(f"Store {method} {path} failed: {exc}") from exc
        if not resp.is_success:
            raise StoreError(f"Store {method} {path} failed: HTTP {resp.status_code}")
        try:
            return resp.json()
        except json.JSONDecodeError as exc:
            raise StoreError(f"Store {method} {path} returned invalid JSON") from exc

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get(self, path: str) -> Any:
        return await self._send("GET", path)

    async def set(self, path: str, value: Any) -> None:
        await self._send("PUT", path, value)

    async def update(self, path: str, values: dict[str, Any]) -> None:
        await self._send("PATCH", path, values)

    @staticmethod
    def _apply(tree: Any, event: str, data: str) -> tuple[Any, bool]:
        """Apply one streaming event. Returns (tree, changed)."""
        if event == "keep-alive":
            return tree, False
        if event in ("cancel", "auth_revoked"):
            raise StoreError(f"Store stream {event}: {data}")
        if event not in ("put", "patch"):
            return tree, False

        payload = json.loads(data)
        parts = _split(payload.get("path", "/"))
        if event == "put":
            return _write(tree, parts, payload.get("data")), True
        for key, value in (payload.get("data") or {}).items():
            tree = _write(tree, parts + _split(key), value)
        return tree, True

    async def watch(self, path: str) -> AsyncIterator[Any]:
        tree: Any = None
        try:
            async with self._client.stream(
                "GET",
                self._url(path),
                params=self._params(),
                headers={"Accept": "text/event-stream"},
                timeout=httpx.Timeout(30.0, read=None),
            ) as resp:
                if not resp.is_success:
                    raise StoreError(f"Store stream {path} failed: HTTP {resp.status_code}")
                async for event in aparse_events(resp.aiter_lines()):
                    tree, changed = self._apply(tree, event.event, event.data)
                    if changed:
                        yield copy.deepcopy(tree)
        except httpx.HTTPError as exc:
            raise StoreError(f"Store stream {path} failed: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise StoreError(f"Store stream {path} sent invalid JSON") from exc
        raise StoreError(f"Store stream {path} closed by server")


def create_store() -> RealtimeStore:
    if REALTIME_STORE_URL:
        logger.info("Using Firebase realtime store at %s", REALTIME_STORE_URL)
        return FirebaseRealtimeStore(REALTIME_STORE_URL, REALTIME_STORE_AUTH)
    logger.warning("REALTIME_STORE_URL not set; chat data will live in process memory")
    return MemoryRealtimeStore()
