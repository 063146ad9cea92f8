import json
import logging

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from schemas.financial import RecordKind
from services.errors import AuthError, DecodeError, InvalidInputError, Result, StoreError, SyncError
from services.gateway import TOOL_NAMES
from services.repository import ConversationRepository

logger = logging.getLogger(__name__)

router = APIRouter()


def _repo(request: Request) -> ConversationRepository:
    return request.app.state.repository


def _status_for(error: SyncError) -> int:
    if isinstance(error, InvalidInputError):
        return 400
    if isinstance(error, AuthError):
        return 401
    if isinstance(error, DecodeError):
        return 422
    if isinstance(error, StoreError):
        return 503
    return 502


def _unwrap(result: Result):
    """Return the value of a successful result or raise the matching HTTPException."""
    if result.ok:
        return result.value
    error = result.error
    raise HTTPException(
        status_code=_status_for(error),
        detail={"kind": error.kind, "detail": str(error)},
    )


# ===========================================================================
# AUTH ROUTES
# ===========================================================================

class LoginRequest(BaseModel):
    phone_number: str


@router.get("/auth/status")
async def auth_status(request: Request):
    repo = _repo(request)
    return {
        "logged_in": await repo.is_logged_in(),
        "phone_number": await repo.stored_phone_number(),
    }


@router.post("/auth/login")
async def login(body: LoginRequest, request: Request):
    _unwrap(await _repo(request).login(body.phone_number))
    return {"logged_in": True, "phone_number": body.phone_number}


@router.post("/auth/logout")
async def logout(request: Request):
    await _repo(request).logout()
    return {"logged_in": False}


# ===========================================================================
# FINANCIAL RECORD ROUTES
# ===========================================================================

@router.get("/records/{kind}")
async def get_record(kind: RecordKind, request: Request, refresh: bool = False):
    """
    Latest decoded record of one kind. Fetched from the gateway when absent
    or when ?refresh=true.
    """
    repo = _repo(request)
    record = repo.state.snapshot.records.get(kind)
    if record is None or refresh:
        record = _unwrap(await repo.fetch_record(kind, scope=f"http:{kind.value}"))
    return {"kind": kind.value, "record": record.model_dump(mode="json", by_alias=True)}


@router.post("/records/refresh")
async def refresh_records(request: Request):
    results = await _repo(request).fetch_all(scope="http:refresh")
    return {
        kind.value: (
            {"ok": True}
            if result.ok
            else {"ok": False, "kind": result.error.kind, "detail": str(result.error)}
        )
        for kind, result in results.items()
    }


@router.post("/tools/{tool_name}")
async def execute_tool(tool_name: str, request: Request):
    if tool_name not in TOOL_NAMES:
        raise HTTPException(status_code=404, detail=f"Unknown tool: {tool_name}")
    raw = _unwrap(await _repo(request).execute_tool(tool_name, scope="http:tools"))
    return {"tool": tool_name, "raw": raw}


# ===========================================================================
# STATE ROUTES
# ===========================================================================

@router.get("/state")
async def get_state(request: Request):
    return _repo(request).state.snapshot.model_dump(mode="json", by_alias=True)


@router.get("/state/events")
async def state_events(request: Request):
    """
    Stream AppState snapshots via SSE.

    SSE event sequence:
      state (current) → state (after every change) …
    """
    store = _repo(request).state

    async def generate():
        try:
            async for snapshot in store.stream():
                if await request.is_disconnected():
                    break
                yield {"event": "state", "data": snapshot.model_dump_json(by_alias=True)}
        except Exception as exc:
            logger.error("State event stream failed: %s", exc)
            yield {"event": "error", "data": json.dumps({"message": str(exc)})}

    return EventSourceResponse(generate())


# ===========================================================================
# CHAT ROUTES
# ===========================================================================

class ChatMessageRequest(BaseModel):
    message: str


@router.get("/chats/{user_id}")
async def get_user_chats(user_id: str, request: Request):
    chats = _unwrap(await _repo(request).get_user_chats(user_id))
    return {
        "user_id": user_id,
        "financial_summary": chats.financial_summary,
        "sessions": [
            {
                "session_id": session.session_id,
                "display_name": session.display_name,
                "last_message_time": session.last_message_time,
                "message_count": len(session.messages),
            }
            for session in chats.sessions()
        ],
    }


@router.post("/chats/{user_id}")
async def create_chat(user_id: str, request: Request):
    session_id = _unwrap(await _repo(request).create_chat_session(user_id))
    return {"user_id": user_id, "session_id": session_id}


@router.get("/chats/{user_id}/{session_id}")
async def get_chat(user_id: str, session_id: str, request: Request):
    session = _unwrap(await _repo(request).get_chat_messages(session_id, user_id))
    return {
        "session_id": session.session_id,
        "messages": [m.model_dump(mode="json") for m in session.ordered()],
    }


@router.post("/chats/{user_id}/{session_id}/messages")
async def send_chat_message(user_id: str, session_id: str, body: ChatMessageRequest, request: Request):
    """
    Queue a query with the agent. The answer arrives later through
    WS /ws/chats/{user_id}/{session_id}.
    """
    repo = _repo(request)
    result = await repo.send_chat_message(body.message, session_id=session_id, user_id=user_id)
    ack = _unwrap(result)
    return {"session_id": session_id, "status": ack.status, "message": ack.message}


@router.websocket("/ws/chats/{user_id}/{session_id}")
async def chat_websocket(user_id: str, session_id: str, websocket: WebSocket):
    """Per-session WebSocket carrying a full ChatView after every store delivery."""
    ws_manager = websocket.app.state.ws_manager
    await ws_manager.connect(user_id, session_id, websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        await ws_manager.disconnect(user_id, session_id, websocket)
