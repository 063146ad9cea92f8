"""
Reactive state store read by the presentation layer.

AppState is an immutable snapshot; every change produces a new one. Readers
either take `snapshot`, register a callback, or iterate `stream()`. Only the
repository calls the mutation methods.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable

from pydantic import BaseModel, ConfigDict, Field

from schemas.chat import UserChats
from schemas.financial import FinancialRecord, RecordKind
from services.chat_sync import ChatView

logger = logging.getLogger(__name__)


class AppState(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_logged_in: bool = False
    phone_number: str | None = None
    is_loading: bool = False
    is_data_loading: bool = False
    error_message: str | None = None
    error_kind: str | None = None
    # Last successful decode per record kind; absent until first fetch
    records: dict[RecordKind, FinancialRecord] = Field(default_factory=dict)
    raw_response: str | None = None
    user_chats: UserChats | None = None
    chat: ChatView = Field(default_factory=ChatView)


class StateStore:
    def __init__(self, initial: AppState | None = None) -> None:
        self._state = initial or AppState()
        self._listeners: list[Callable[[AppState], None]] = []
        self._queues: set[asyncio.Queue] = set()

    @property
    def snapshot(self) -> AppState:
        return self._state

    def update(self, **changes) -> AppState:
        self._state = self._state.model_copy(update=changes)
        self._emit()
        return self._state

    def set_record(self, kind: RecordKind, record: FinancialRecord) -> AppState:
        return self.update(records={**self._state.records, kind: record})

    def reset(self, **changes) -> AppState:
        self._state = AppState(**changes)
        self._emit()
        return self._state

    def subscribe(self, callback: Callable[[AppState], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self) -> None:
        for callback in list(self._listeners):
            try:
                callback(self._state)
            except Exception as exc:
                logger.error("State listener failed: %s", exc)
        for queue in self._queues:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(self._state)

    async def stream(self) -> AsyncIterator[AppState]:
        """Current snapshot, then the newest snapshot after each change."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._queues.add(queue)
        try:
            yield self._state
            while True:
                yield await queue.get()
        finally:
            self._queues.discard(queue)
