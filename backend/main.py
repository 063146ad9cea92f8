import asyncio
import logging
import os
from collections import defaultdict
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router
from database import create_tables
from services.chat_sync import ChatSynchronizer, Subscription
from services.repository import build_repository

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# WebSocket manager
# ---------------------------------------------------------------------------

class WebSocketManager:
    """
    Fans chat snapshots out to WebSockets keyed by (user_id, session_id).

    The first socket for a session opens one store subscription; the last
    socket to leave closes it.
    """

    def __init__(self, chat: ChatSynchronizer) -> None:
        self._chat = chat
        self._connections: dict[tuple[str, str], list[WebSocket]] = defaultdict(list)
        self._subscriptions: dict[tuple[str, str], Subscription] = {}
        self._pumps: dict[tuple[str, str], asyncio.Task] = {}

    async def connect(self, user_id: str, session_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        key = (user_id, session_id)
        self._connections[key].append(websocket)
        sub = self._subscriptions.get(key)
        if sub is None:
            sub = self._chat.subscribe(user_id, session_id)
            self._subscriptions[key] = sub
            self._pumps[key] = asyncio.create_task(self._pump(key, sub))
        elif sub.latest is not None:
            await websocket.send_text(sub.latest.model_dump_json())

    async def disconnect(self, user_id: str, session_id: str, websocket: WebSocket) -> None:
        key = (user_id, session_id)
        sockets = self._connections.get(key, [])
        if websocket in sockets:
            sockets.remove(websocket)
        if sockets:
            return
        self._connections.pop(key, None)
        sub = self._subscriptions.pop(key, None)
        self._pumps.pop(key, None)
        if sub is not None:
            await sub.close()

    async def _pump(self, key: tuple[str, str], sub: Subscription) -> None:
        async for view in sub:
            await self.broadcast(key, view.model_dump_json())

    async def broadcast(self, key: tuple[str, str], payload: str) -> None:
        dead = []
        for ws in list(self._connections.get(key, [])):
            try:
                await ws.send_text(payload)
            except Exception:
                dead.append(ws)
        for ws in dead:
            await self.disconnect(key[0], key[1], ws)

    @property
    def open_sessions(self) -> int:
        return len(self._subscriptions)

    async def close(self) -> None:
        for sub in list(self._subscriptions.values()):
            await sub.close()
        self._subscriptions.clear()
        self._connections.clear()
        self._pumps.clear()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    await create_tables()
    logger.info("Database tables created / verified.")

    repository = getattr(app.state, "repository", None) or build_repository()
    await repository.restore()
    app.state.repository = repository
    app.state.ws_manager = WebSocketManager(repository.chat)
    yield
    await app.state.ws_manager.close()
    await repository.aclose()
    logger.info("Repository closed.")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(title="Artha Sync API", lifespan=lifespan)

_frontend_url = os.getenv("FRONTEND_URL", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[_frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.get("/health")
async def health():
    return {"status": "ok"}
