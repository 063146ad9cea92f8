"""
Conversation repository: the one surface the presentation layer talks to.

Combines the session store, gateway client, payload decoder and chat
synchronizer, and mirrors every outcome into the reactive StateStore.

Fetches are started as tasks under a named scope (one per screen). Leaving a
screen calls cancel_scope(); a cancelled fetch never writes to state.
"""

import asyncio
import logging
from collections import defaultdict

from database import SessionStore
from schemas.chat import ChatSession, UserChats
from schemas.financial import FinancialRecord, RecordKind
from services.agent import AgentAck, AgentClient
from services.chat_sync import ChatSynchronizer, Subscription
from services.decoder import decode
from services.errors import AuthError, CancelledFetchError, Result, StoreError, SyncError
from services.gateway import GatewayClient
from services.realtime import RealtimeStore, create_store
from services.state import StateStore

logger = logging.getLogger(__name__)

# Test users provisioned on the mock gateway
ALLOWED_PHONE_NUMBERS: tuple[str, ...] = (
    "1414141414", "2222222222", "3333333333", "4444444444", "5555555555",
    "6666666666", "7777777777", "8888888888", "9999999999", "1010101010",
    "1212121212", "1313131313", "2020202020", "1515151515", "2121212121",
    "1616161616", "1717171717", "1818181818", "1919191919", "2525252525",
    "2323232323", "2424242424",
)

DEFAULT_SCOPE = "default"


class ConversationRepository:
    def __init__(
        self,
        session_store: SessionStore,
        gateway: GatewayClient,
        chat: ChatSynchronizer,
        state: StateStore | None = None,
        allowed_numbers: tuple[str, ...] = ALLOWED_PHONE_NUMBERS,
    ) -> None:
        self._session_store = session_store
        self._gateway = gateway
        self._chat = chat
        self._state = state or StateStore()
        self._allowed_numbers = allowed_numbers
        self._scopes: dict[str, set[asyncio.Task]] = defaultdict(set)
        self._in_flight = 0
        self._chat_sub: Subscription | None = None
        self._user_chats_sub: Subscription | None = None
        self._closeables: list = []

        self._chat.add_listener(lambda view: self._state.update(chat=view))

    @property
    def state(self) -> StateStore:
        return self._state

    @property
    def chat(self) -> ChatSynchronizer:
        return self._chat

    def _fail(self, error: SyncError, **changes) -> None:
        self._state.update(error_message=str(error), error_kind=error.kind, **changes)

    def clear_error(self) -> None:
        self._state.update(error_message=None, error_kind=None)
        self._chat.clear_error()

    # ── auth ──────────────────────────────────────────────────────────────────

    async def restore(self) -> None:
        """Load the persisted login into state (called once at startup)."""
        phone = await self._session_store.current_phone_number()
        self._state.update(is_logged_in=phone is not None, phone_number=phone)
        logger.info("Repository restored. Logged in: %s", phone is not None)

    async def is_logged_in(self) -> bool:
        return await self._session_store.is_authenticated()

    async def stored_phone_number(self) -> str | None:
        return await self._session_store.current_phone_number()

    async def login(self, phone_number: str) -> Result[None]:
        if phone_number not in self._allowed_numbers:
            error = AuthError("validate", f"{phone_number} is not a registered test number")
            self._fail(error)
            return Result.failure(error)

        self._state.update(is_loading=True, error_message=None, error_kind=None)
        result = await self._gateway.login(phone_number)
        if result.ok:
            logger.info("Sign in successful for %s", phone_number)
            self._state.update(is_loading=False, is_logged_in=True, phone_number=phone_number)
        else:
            logger.error("Sign in failed: %s", result.error)
            self._fail(result.error, is_loading=False)
        return result

    async def logout(self) -> None:
        logger.info("Logging out")
        await self.close_chat()
        if self._user_chats_sub is not None:
            await self._user_chats_sub.close()
            self._user_chats_sub = None
        await self._chat.reset()
        for scope in list(self._scopes):
            await self.cancel_scope(scope)
        await self._session_store.clear()
        self._state.reset()

    async def _require_user(self, user_id: str | None = None) -> str:
        phone = user_id or self._state.snapshot.phone_number or await self._session_store.current_phone_number()
        if phone is None:
            raise AuthError("session", "Not signed in")
        return phone

    # ── financial records ─────────────────────────────────────────────────────

    def _spawn(self, scope: str, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        tasks = self._scopes[scope]
        tasks.add(task)
        task.add_done_callback(tasks.discard)
        return task

    async def cancel_scope(self, scope: str) -> None:
        """Cancel every in-flight fetch started under `scope`."""
        tasks = self._scopes.pop(scope, set())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d fetch(es) in scope %s", len(tasks), scope)

    def _data_loading(self, delta: int) -> None:
        self._in_flight += delta
        self._state.update(is_data_loading=self._in_flight > 0)

    async def _fetch(self, kind: RecordKind) -> Result[FinancialRecord]:
        self._data_loading(+1)
        try:
            raw = await self._gateway.call_tool(kind.value)
            result = decode(kind.value, raw.value) if raw.ok else Result.failure(raw.error)
        finally:
            self._data_loading(-1)

        if result.ok:
            self._state.set_record(kind, result.value)
        else:
            logger.error("Failed to fetch %s: %s", kind.value, result.error)
            self._fail(result.error)
        return result

    async def _await_scoped(self, task: asyncio.Task, what: str) -> Result:
        """
        Wait for a scoped task. A scope cancellation comes back as a failed
        Result; cancellation of the caller itself still propagates.
        """
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                task.cancel()
                raise
            logger.info("%s cancelled", what)
            return Result.failure(CancelledFetchError(f"{what} cancelled"))

    async def fetch_record(self, kind: RecordKind, scope: str = DEFAULT_SCOPE) -> Result[FinancialRecord]:
        self._state.update(error_message=None, error_kind=None)
        return await self._await_scoped(self._spawn(scope, self._fetch(kind)), kind.value)

    async def fetch_bank_transactions(self, scope: str = DEFAULT_SCOPE) -> Result[FinancialRecord]:
        return await self.fetch_record(RecordKind.BANK_TRANSACTIONS, scope)

    async def fetch_net_worth(self, scope: str = DEFAULT_SCOPE) -> Result[FinancialRecord]:
        return await self.fetch_record(RecordKind.NET_WORTH, scope)

    async def fetch_epf_details(self, scope: str = DEFAULT_SCOPE) -> Result[FinancialRecord]:
        return await self.fetch_record(RecordKind.EPF_DETAILS, scope)

    async def fetch_credit_report(self, scope: str = DEFAULT_SCOPE) -> Result[FinancialRecord]:
        return await self.fetch_record(RecordKind.CREDIT_REPORT, scope)

    async def fetch_mf_transactions(self, scope: str = DEFAULT_SCOPE) -> Result[FinancialRecord]:
        return await self.fetch_record(RecordKind.MF_TRANSACTIONS, scope)

    async def fetch_stock_transactions(self, scope: str = DEFAULT_SCOPE) -> Result[FinancialRecord]:
        return await self.fetch_record(RecordKind.STOCK_TRANSACTIONS, scope)

    async def fetch_all(self, scope: str = DEFAULT_SCOPE) -> dict[RecordKind, Result[FinancialRecord]]:
        """Fetch all six records concurrently; each succeeds or fails on its own."""
        logger.info("Fetching all financial data")
        self._state.update(error_message=None, error_kind=None)
        kinds = list(RecordKind)
        tasks = [self._spawn(scope, self._fetch(kind)) for kind in kinds]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        results: dict[RecordKind, Result[FinancialRecord]] = {}
        for kind, outcome in zip(kinds, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                results[kind] = Result.failure(CancelledFetchError(f"{kind.value} cancelled"))
            elif isinstance(outcome, BaseException):
                logger.error("Unexpected failure fetching %s: %s", kind.value, outcome)
                results[kind] = Result.failure(SyncError(str(outcome)))
            else:
                results[kind] = outcome
        return results

    async def execute_tool(self, tool_name: str, scope: str = DEFAULT_SCOPE) -> Result[str]:
        """Raw tool call; the unparsed payload lands in state.raw_response."""
        self._state.update(is_loading=True, error_message=None, error_kind=None, raw_response=None)
        try:
            result = await self._await_scoped(self._spawn(scope, self._gateway.call_tool(tool_name)), tool_name)
        finally:
            self._state.update(is_loading=False)
        if result.ok:
            self._state.update(raw_response=result.value)
        elif not isinstance(result.error, CancelledFetchError):
            self._fail(result.error)
        return result

    # ── chat ──────────────────────────────────────────────────────────────────

    async def create_chat_session(self, user_id: str | None = None) -> Result[str]:
        try:
            user_id = await self._require_user(user_id)
        except AuthError as exc:
            self._fail(exc)
            return Result.failure(exc)
        return await self._chat.create_session(user_id)

    async def send_chat_message(
        self, text: str, session_id: str | None = None, user_id: str | None = None,
    ) -> Result[AgentAck]:
        try:
            user_id = await self._require_user(user_id)
        except AuthError as exc:
            self._fail(exc)
            return Result.failure(exc)
        session_id = session_id or self._chat.current_session_id
        return await self._chat.send_message(user_id, session_id, text)

    async def open_chat(self, session_id: str, user_id: str | None = None) -> Subscription:
        """Start watching `session_id`, closing the previously opened chat."""
        user_id = await self._require_user(user_id)
        await self.close_chat()
        self._chat_sub = self._chat.subscribe(user_id, session_id)
        return self._chat_sub

    async def close_chat(self) -> None:
        if self._chat_sub is not None:
            await self._chat_sub.close()
            self._chat_sub = None

    async def observe_user_chats(self, user_id: str | None = None) -> Subscription:
        user_id = await self._require_user(user_id)
        if self._user_chats_sub is not None:
            await self._user_chats_sub.close()

        def on_error(exc: StoreError) -> None:
            self._fail(exc)

        self._user_chats_sub = self._chat.observe_user_chats(
            user_id,
            on_update=lambda chats: self._state.update(user_chats=chats),
            on_error=on_error,
        )
        return self._user_chats_sub

    async def get_user_chats(self, user_id: str | None = None) -> Result[UserChats]:
        try:
            user_id = await self._require_user(user_id)
        except AuthError as exc:
            return Result.failure(exc)
        result = await self._chat.get_user_chats(user_id)
        if result.ok:
            self._state.update(user_chats=result.value)
        else:
            self._state.update(user_chats=UserChats(user_id=user_id))
            self._fail(result.error)
        return result

    async def get_chat_messages(self, session_id: str, user_id: str | None = None) -> Result[ChatSession]:
        try:
            user_id = await self._require_user(user_id)
        except AuthError as exc:
            return Result.failure(exc)
        result = await self._chat.get_chat_messages(user_id, session_id)
        if not result.ok:
            self._fail(result.error)
        return result

    async def aclose(self) -> None:
        await self.close_chat()
        if self._user_chats_sub is not None:
            await self._user_chats_sub.close()
        await self._chat.close()
        for scope in list(self._scopes):
            await self.cancel_scope(scope)
        await self._gateway.aclose()
        for resource in self._closeables:
            await resource.aclose()


def build_repository(
    session_store: SessionStore | None = None,
    store: RealtimeStore | None = None,
) -> ConversationRepository:
    """Wire the production collaborators from environment configuration."""
    session_store = session_store or SessionStore()
    store = store or create_store()
    agent = AgentClient()
    repo = ConversationRepository(
        session_store=session_store,
        gateway=GatewayClient(session_store),
        chat=ChatSynchronizer(store, agent),
    )
    repo._closeables.extend([agent, store])
    return repo
