"""
Chat synchronizer.

Owns the live conversation for one screen context:
- creates chat session ids and their (empty) store containers,
- hands queries to the external agent,
- watches the store and rebuilds the visible conversation from every
  full snapshot it delivers.

Per-session status: NO_SESSION -> CREATING -> ACTIVE <-> AWAITING_AGENT_RESPONSE,
with ERROR on a failed create or send. The "waiting" flag is recomputed from
each snapshot alone: it is true iff some message is thinking-only.

Subscriptions are never closed implicitly. Store failures populate
error_message and the subscription reconnects after a short delay.
"""

import asyncio
import logging
import os
import secrets
import string
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from schemas.chat import ChatMessage, ChatSession, ChatStatus, UserChats, decode_messages, now_millis
from services.agent import AgentAck, AgentClient
from services.errors import InvalidInputError, Result, StoreError, SyncError
from services.realtime import RealtimeStore, chat_path, user_path

load_dotenv()

logger = logging.getLogger(__name__)

REALTIME_RECONNECT_SECONDS = float(os.getenv("REALTIME_RECONNECT_SECONDS", "2"))

_SUFFIX_LENGTH = 15


def generate_session_id() -> str:
    """session_<unix millis>_<15 random lowercase letters>, fresh randomness per call."""
    suffix = "".join(secrets.choice(string.ascii_lowercase) for _ in range(_SUFFIX_LENGTH))
    return f"session_{now_millis()}_{suffix}"


def is_valid_session_id(session_id: str) -> bool:
    return session_id.startswith("session_") and len(session_id) > 20


class ChatView(BaseModel):
    """Read-only snapshot of one chat session as the presentation layer sees it."""

    model_config = ConfigDict(frozen=True)

    status: ChatStatus = ChatStatus.NO_SESSION
    user_id: str | None = None
    session_id: str | None = None
    messages: list[ChatMessage] = Field(default_factory=list)
    is_waiting: bool = False
    error_message: str | None = None
    error_kind: str | None = None


def reconcile(raw: Any) -> tuple[list[ChatMessage], bool]:
    """
    Turn one delivered session node into (ordered messages, waiting).

    The node is the store's complete current message set, so it replaces
    whatever was shown before. Messages are keyed by id, ordered by
    timestamp, and waiting is true iff any message is thinking-only.
    """
    messages = sorted(decode_messages(raw).values(), key=lambda m: (m.timestamp_millis, m.id))
    return messages, any(m.is_thinking_only for m in messages)


@dataclass
class _SessionState:
    user_id: str
    session_id: str
    status: ChatStatus = ChatStatus.ACTIVE
    messages: list[ChatMessage] = field(default_factory=list)
    is_waiting: bool = False
    resolved_at_send: frozenset[str] = frozenset()
    send_error: SyncError | None = None
    store_error: SyncError | None = None

    def apply(self, raw: Any) -> None:
        self.messages, self.is_waiting = reconcile(raw)
        self.store_error = None
        if self.status is ChatStatus.AWAITING_AGENT_RESPONSE and not self.is_waiting:
            if any(m.is_resolved and m.id not in self.resolved_at_send for m in self.messages):
                self.status = ChatStatus.ACTIVE

    def view(self) -> ChatView:
        error = self.send_error or self.store_error
        return ChatView(
            status=self.status,
            user_id=self.user_id,
            session_id=self.session_id,
            messages=list(self.messages),
            is_waiting=self.is_waiting,
            error_message=str(error) if error else None,
            error_kind=error.kind if error else None,
        )


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

_CLOSED = object()


class Subscription:
    """
    Live stream of snapshots. Iterate with `async for`; close() explicitly.

    Only the newest undelivered snapshot is buffered: each snapshot is
    complete, so a slow reader skips straight to the latest one.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.latest: Any = None
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._task: asyncio.Task | None = None
        self._closed = False
        self._on_close: Callable[["Subscription"], None] | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, item: Any) -> None:
        if self._closed:
            return
        self.latest = item
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(item)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)
        if self._on_close is not None:
            self._on_close(self)
        logger.info("Subscription %s closed", self.name)

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Any]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


# ---------------------------------------------------------------------------
# Synchronizer
# ---------------------------------------------------------------------------

class ChatSynchronizer:
    def __init__(
        self,
        store: RealtimeStore,
        agent: AgentClient,
        reconnect_delay: float = REALTIME_RECONNECT_SECONDS,
    ) -> None:
        self._store = store
        self._agent = agent
        self._reconnect_delay = reconnect_delay
        self._sessions: dict[str, _SessionState] = {}
        self._current: str | None = None
        # View used while there is no current session (NO_SESSION / CREATING / ERROR)
        self._detached = ChatView()
        # Sessions created here that the store may not echo back yet
        self._local_sessions: dict[str, set[str]] = {}
        self._subscriptions: set[Subscription] = set()
        self._listeners: list[Callable[[ChatView], None]] = []

    # ── observable state ──────────────────────────────────────────────────────

    @property
    def current_session_id(self) -> str | None:
        return self._current

    @property
    def view(self) -> ChatView:
        if self._current is None:
            return self._detached
        return self._sessions[self._current].view()

    def view_of(self, session_id: str) -> ChatView | None:
        state = self._sessions.get(session_id)
        return state.view() if state else None

    def add_listener(self, callback: Callable[[ChatView], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def _publish(self) -> None:
        view = self.view
        for callback in list(self._listeners):
            try:
                callback(view)
            except Exception as exc:
                logger.error("Chat listener failed: %s", exc)

    def _register(self, user_id: str, session_id: str) -> _SessionState:
        state = self._sessions.get(session_id)
        if state is None:
            state = _SessionState(user_id=user_id, session_id=session_id)
            self._sessions[session_id] = state
        return state

    def clear_error(self) -> None:
        if self._current is None:
            self._detached = ChatView()
        else:
            state = self._sessions[self._current]
            state.send_error = None
            state.store_error = None
            if state.status is ChatStatus.ERROR:
                state.status = ChatStatus.ACTIVE
        self._publish()

    # ── session lifecycle ─────────────────────────────────────────────────────

    async def create_session(self, user_id: str) -> Result[str]:
        self._current = None
        self._detached = ChatView(status=ChatStatus.CREATING, user_id=user_id)
        self._publish()

        session_id = generate_session_id()
        try:
            await self._store.set(chat_path(user_id, session_id), {})
        except StoreError as exc:
            logger.error("Failed to create chat session for %s: %s", user_id, exc)
            self._detached = ChatView(
                status=ChatStatus.ERROR,
                user_id=user_id,
                error_message=str(exc),
                error_kind=exc.kind,
            )
            self._publish()
            return Result.failure(exc)

        self._register(user_id, session_id)
        self._local_sessions.setdefault(user_id, set()).add(session_id)
        self._current = session_id
        logger.info("Created chat session %s for %s", session_id, user_id)
        self._publish()
        return Result.success(session_id)

    async def send_message(self, user_id: str, session_id: str | None, text: str) -> Result[AgentAck]:
        """
        Hand `text` to the agent. Success means the agent accepted the query;
        the answer arrives later through the subscription.
        """
        query = text.strip()
        if not query:
            return Result.failure(InvalidInputError("Message is empty"))

        if not session_id:
            logger.warning(
                "send_message for %s without a session; creating one implicitly. "
                "Callers should create the session first.", user_id,
            )
            created = await self.create_session(user_id)
            if not created.ok:
                return Result.failure(created.error)
            session_id = created.value

        state = self._register(user_id, session_id)
        self._current = session_id

        state.resolved_at_send = frozenset(m.id for m in state.messages if m.is_resolved)
        state.status = ChatStatus.AWAITING_AGENT_RESPONSE
        state.send_error = None
        self._publish()

        result = await self._agent.start(user_id, session_id, query)
        if not result.ok:
            state.status = ChatStatus.ERROR
            state.send_error = result.error
            self._publish()
        return result

    # ── live updates ──────────────────────────────────────────────────────────

    def _track(self, sub: Subscription, runner) -> Subscription:
        sub._on_close = self._subscriptions.discard
        self._subscriptions.add(sub)
        sub._task = asyncio.create_task(runner)
        logger.info("Subscription %s opened", sub.name)
        return sub

    async def _watch_forever(self, sub: Subscription, path: str, on_snapshot, on_error) -> None:
        while True:
            try:
                async for raw in self._store.watch(path):
                    on_snapshot(raw)
            except StoreError as exc:
                logger.warning("Subscription %s lost: %s; reconnecting", sub.name, exc)
                on_error(exc)
            except Exception as exc:
                logger.error("Subscription %s failed: %s; reconnecting", sub.name, exc)
                on_error(StoreError(f"Subscription failed: {exc}"))
            await asyncio.sleep(self._reconnect_delay)

    def subscribe(self, user_id: str, session_id: str) -> Subscription:
        """Watch one session. Yields a ChatView after every store delivery."""
        state = self._register(user_id, session_id)
        self._current = session_id
        sub = Subscription(f"chat:{user_id}/{session_id}")
        self._publish()

        def on_snapshot(raw: Any) -> None:
            state.apply(raw)
            sub._push(state.view())
            if self._current == session_id:
                self._publish()

        def on_error(exc: StoreError) -> None:
            state.store_error = exc
            sub._push(state.view())
            if self._current == session_id:
                self._publish()

        return self._track(sub, self._watch_forever(sub, chat_path(user_id, session_id), on_snapshot, on_error))

    def _merge_local(self, chats: UserChats) -> UserChats:
        local = self._local_sessions.get(chats.user_id)
        if not local:
            return chats
        # Once the store holds a session it no longer needs patching in
        local.difference_update(chats.chats)
        missing = {sid: ChatSession(session_id=sid) for sid in local}
        if not missing:
            return chats
        return chats.model_copy(update={"chats": {**chats.chats, **missing}})

    def observe_user_chats(
        self,
        user_id: str,
        on_update: Callable[[UserChats], None] | None = None,
        on_error: Callable[[StoreError], None] | None = None,
    ) -> Subscription:
        """Watch a user's whole conversation index. Yields UserChats."""
        sub = Subscription(f"user:{user_id}")

        def on_snapshot(raw: Any) -> None:
            chats = self._merge_local(UserChats.from_store(user_id, raw))
            sub._push(chats)
            if on_update:
                on_update(chats)

        def on_failure(exc: StoreError) -> None:
            if on_error:
                on_error(exc)

        return self._track(sub, self._watch_forever(sub, user_path(user_id), on_snapshot, on_failure))

    # ── one-shot reads ────────────────────────────────────────────────────────

    async def get_user_chats(self, user_id: str) -> Result[UserChats]:
        try:
            raw = await self._store.get(user_path(user_id))
        except StoreError as exc:
            logger.error("Failed to load user chats for %s: %s", user_id, exc)
            return Result.failure(exc)
        if raw is None:
            logger.info("User %s has no chats yet", user_id)
        return Result.success(self._merge_local(UserChats.from_store(user_id, raw)))

    async def get_chat_messages(self, user_id: str, session_id: str) -> Result[ChatSession]:
        try:
            raw = await self._store.get(chat_path(user_id, session_id))
        except StoreError as exc:
            logger.error("Failed to load chat messages for %s: %s", session_id, exc)
            return Result.failure(exc)
        state = self._register(user_id, session_id)
        state.apply(raw)
        if self._current == session_id:
            self._publish()
        return Result.success(ChatSession(session_id=session_id, messages={m.id: m for m in state.messages}))

    async def close(self) -> None:
        for sub in list(self._subscriptions):
            await sub.close()

    async def reset(self) -> None:
        """Close every subscription and forget all sessions, e.g. on logout."""
        await self.close()
        self._sessions.clear()
        self._local_sessions.clear()
        self._current = None
        self._detached = ChatView()
        self._publish()

    @property
    def open_subscriptions(self) -> int:
        return len(self._subscriptions)
