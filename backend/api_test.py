"""
HTTP surface tests through FastAPI's TestClient.

One client (one event loop) serves the whole module; the repository is
wired to a mocked gateway, a mocked agent that answers by writing into the
in-memory realtime store, and the throwaway SQLite file from conftest.

Covers:
  1. /health and the auth routes, including allow-list rejection (401)
  2. Record routes: decoded record, gateway failure (502), unknown kind
  3. Raw tool route and the state snapshot
  4. Chat routes and the per-session WebSocket carrying the agent's answer
"""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import AGENT_URL, GATEWAY_URL, SESSION_TOKEN, FakeGateway, bank_payload, net_worth_payload
from database import SessionStore
from main import app
from schemas.chat import now_millis
from schemas.financial import RecordKind
from services.agent import AgentClient
from services.chat_sync import ChatSynchronizer
from services.gateway import GatewayClient
from services.realtime import MemoryRealtimeStore, chat_path
from services.repository import ConversationRepository

USER = "1414141414"


@pytest.fixture(scope="module")
def client():
    realtime = MemoryRealtimeStore()

    async def agent_handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        await realtime.set(f"{chat_path(body['user_id'], body['session_id'])}/reply_1", {
            "query_user": body["query"],
            "llm_thinking": "Checking bank transactions",
            "llm_response": "You spent Rs 450 on food.",
            "timestamps": now_millis(),
        })
        return httpx.Response(200, json={"status": "started", "message": "queued"})

    session_store = SessionStore()
    fake = FakeGateway({
        RecordKind.NET_WORTH.value: net_worth_payload("1000000"),
        RecordKind.BANK_TRANSACTIONS.value: bank_payload(),
    })
    agent = AgentClient(AGENT_URL, transport=httpx.MockTransport(agent_handler))
    repository = ConversationRepository(
        session_store,
        GatewayClient(session_store, base_url=GATEWAY_URL, session_token=SESSION_TOKEN, transport=fake.transport()),
        ChatSynchronizer(realtime, agent, reconnect_delay=0.05),
    )
    repository._closeables.append(agent)
    app.state.repository = repository

    with TestClient(app) as test_client:
        yield test_client
    app.state.repository = None


def _login(client: TestClient) -> None:
    assert client.post("/auth/login", json={"phone_number": USER}).status_code == 200


# ---------------------------------------------------------------------------
# Test 1: health and auth
# ---------------------------------------------------------------------------

def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_login_flow(client):
    client.post("/auth/logout")
    assert client.get("/auth/status").json() == {"logged_in": False, "phone_number": None}

    rejected = client.post("/auth/login", json={"phone_number": "0000000000"})
    assert rejected.status_code == 401
    assert rejected.json()["detail"]["kind"] == "AuthError"

    _login(client)
    assert client.get("/auth/status").json() == {"logged_in": True, "phone_number": USER}


# ---------------------------------------------------------------------------
# Test 2: records
# ---------------------------------------------------------------------------

def test_net_worth_record(client):
    _login(client)
    resp = client.get("/records/fetch_net_worth", params={"refresh": True})
    assert resp.status_code == 200
    record = resp.json()["record"]
    assert record["netWorthResponse"]["totalNetWorthValue"]["units"] == 1000000.0


def test_missing_record_is_bad_gateway(client):
    resp = client.get("/records/fetch_credit_report")
    assert resp.status_code == 502
    assert resp.json()["detail"]["kind"] == "EmptyResultError"


def test_unknown_record_kind(client):
    assert client.get("/records/fetch_everything").status_code == 422


def test_refresh_reports_each_record(client):
    body = client.post("/records/refresh").json()
    assert body["fetch_net_worth"] == {"ok": True}
    assert body["fetch_bank_transactions"] == {"ok": True}
    assert body["fetch_epf_details"]["ok"] is False


# ---------------------------------------------------------------------------
# Test 3: raw tool and state
# ---------------------------------------------------------------------------

def test_raw_tool(client):
    resp = client.post("/tools/fetch_bank_transactions")
    assert resp.status_code == 200
    assert json.loads(resp.json()["raw"])["bankTransactions"][0]["bank"] == "HDFC"
    assert client.post("/tools/fetch_everything").status_code == 404


def test_state_snapshot(client):
    _login(client)
    state = client.get("/state").json()
    assert state["is_logged_in"] is True
    assert state["phone_number"] == USER
    assert state["raw_response"] is not None
    assert RecordKind.NET_WORTH.value in state["records"]


# ---------------------------------------------------------------------------
# Test 4: chat
# ---------------------------------------------------------------------------

def test_chat_session_listing(client):
    _login(client)
    first = client.post(f"/chats/{USER}").json()["session_id"]
    second = client.post(f"/chats/{USER}").json()["session_id"]
    listed = {s["session_id"] for s in client.get(f"/chats/{USER}").json()["sessions"]}
    assert {first, second} <= listed


def test_empty_message_rejected(client):
    session_id = client.post(f"/chats/{USER}").json()["session_id"]
    resp = client.post(f"/chats/{USER}/{session_id}/messages", json={"message": "  "})
    assert resp.status_code == 400
    assert resp.json()["detail"]["kind"] == "InvalidInputError"


def test_websocket_receives_agent_answer(client):
    session_id = client.post(f"/chats/{USER}").json()["session_id"]
    with client.websocket_connect(f"/ws/chats/{USER}/{session_id}") as ws:
        first = ws.receive_json()
        assert first["session_id"] == session_id
        assert first["messages"] == []

        resp = client.post(f"/chats/{USER}/{session_id}/messages", json={"message": "Food spend?"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "started"

        for _ in range(10):
            view = ws.receive_json()
            if view["messages"] and view["status"] == "active":
                break
        assert view["is_waiting"] is False
        assert view["messages"][0]["agent_response"] == "You spent Rs 450 on food."

    messages = client.get(f"/chats/{USER}/{session_id}").json()["messages"]
    assert messages[0]["user_query"] == "Food spend?"
