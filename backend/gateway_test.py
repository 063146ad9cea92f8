"""
Gateway client tests (httpx.MockTransport in place of the network).

Covers:
  1. Login handshake: both steps 2xx -> session persisted
  2. Login aborts on the first non-2xx step with that status
  3. Transport failure during login -> NetworkError, nothing persisted
  4. tools/call request shape and Mcp-Session-Id header
  5. Non-2xx tool call -> HttpStatusError, empty content -> EmptyResultError
  6. Agent client: accepted query, HTTP failure, transport failure
"""

import asyncio
import json
from urllib.parse import parse_qsl

import httpx

from conftest import AGENT_URL, GATEWAY_URL, SESSION_TOKEN, FakeGateway, net_worth_payload
from schemas.financial import RecordKind
from services.agent import AgentClient
from services.errors import (
    AuthError,
    DecodeError,
    EmptyResultError,
    FetchError,
    HttpStatusError,
    NetworkError,
)
from services.gateway import GatewayClient, jsonrpc_request


def _client(store, fake: FakeGateway) -> GatewayClient:
    return GatewayClient(store, base_url=GATEWAY_URL, session_token=SESSION_TOKEN, transport=fake.transport())


# ---------------------------------------------------------------------------
# Test 1-3: login
# ---------------------------------------------------------------------------

def test_login_persists_phone_and_token(session_store_factory):
    async def scenario():
        store, engine = await session_store_factory()
        fake = FakeGateway()
        gateway = _client(store, fake)
        try:
            result = await gateway.login("1414141414")
            assert result.ok
            assert await store.is_authenticated()
            assert await store.current_phone_number() == "1414141414"
            assert await store.current_session_token() == SESSION_TOKEN

            bootstrap, login = fake.requests
            assert bootstrap.method == "GET"
            assert bootstrap.url.params["sessionId"] == SESSION_TOKEN
            assert login.method == "POST"
            form = dict(parse_qsl(login.content.decode()))
            assert form == {"sessionId": SESSION_TOKEN, "phoneNumber": "1414141414"}
        finally:
            await gateway.aclose()
            await engine.dispose()

    asyncio.run(scenario())


def test_login_stops_at_failed_session_step(session_store_factory):
    async def scenario():
        store, engine = await session_store_factory()
        fake = FakeGateway(session_status=503)
        gateway = _client(store, fake)
        try:
            result = await gateway.login("1414141414")
            assert isinstance(result.error, AuthError)
            assert result.error.step == "session"
            assert result.error.status_code == 503
            assert len(fake.requests) == 1
            assert not await store.is_authenticated()
        finally:
            await gateway.aclose()
            await engine.dispose()

    asyncio.run(scenario())


def test_login_reports_login_step_status(session_store_factory):
    async def scenario():
        store, engine = await session_store_factory()
        gateway = _client(store, FakeGateway(login_status=401))
        try:
            result = await gateway.login("1414141414")
            assert result.error.step == "login"
            assert result.error.status_code == 401
            assert not await store.is_authenticated()
        finally:
            await gateway.aclose()
            await engine.dispose()

    asyncio.run(scenario())


def test_login_transport_failure_is_network_error(session_store_factory):
    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def scenario():
        store, engine = await session_store_factory()
        gateway = GatewayClient(store, base_url=GATEWAY_URL, transport=httpx.MockTransport(unreachable))
        try:
            result = await gateway.login("1414141414")
            assert isinstance(result.error, NetworkError)
            assert not await store.is_authenticated()
        finally:
            await gateway.aclose()
            await engine.dispose()

    asyncio.run(scenario())


# ---------------------------------------------------------------------------
# Test 4-5: tools
# ---------------------------------------------------------------------------

def test_jsonrpc_request_shape():
    assert jsonrpc_request("fetch_net_worth") == {
        "jsonrpc": "2.0",
        "id": 1,
        "method": "tools/call",
        "params": {"name": "fetch_net_worth", "arguments": {}},
    }


def test_call_tool_returns_embedded_text(session_store_factory):
    async def scenario():
        store, engine = await session_store_factory()
        fake = FakeGateway(tools={RecordKind.NET_WORTH.value: net_worth_payload()})
        gateway = _client(store, fake)
        try:
            await store.save("1414141414", "stored-token")
            result = await gateway.call_tool(RecordKind.NET_WORTH.value)
            assert result.ok
            assert json.loads(result.value)["netWorthResponse"]["totalNetWorthValue"]["units"] == "1000000"

            request = fake.requests[-1]
            assert request.url.path == "/mcp/stream"
            assert request.headers["Mcp-Session-Id"] == "stored-token"
            assert "text/event-stream" in request.headers["Accept"]
            assert json.loads(request.content)["method"] == "tools/call"
        finally:
            await gateway.aclose()
            await engine.dispose()

    asyncio.run(scenario())


def test_call_tool_falls_back_to_constant_token(session_store_factory):
    async def scenario():
        store, engine = await session_store_factory()
        fake = FakeGateway(tools={RecordKind.NET_WORTH.value: net_worth_payload()})
        gateway = _client(store, fake)
        try:
            await gateway.call_tool(RecordKind.NET_WORTH.value)
            assert fake.requests[-1].headers["Mcp-Session-Id"] == SESSION_TOKEN
        finally:
            await gateway.aclose()
            await engine.dispose()

    asyncio.run(scenario())


def test_call_tool_http_failure(session_store_factory):
    async def scenario():
        store, engine = await session_store_factory()
        fake = FakeGateway(tools={RecordKind.CREDIT_REPORT.value: httpx.Response(500, text="boom")})
        gateway = _client(store, fake)
        try:
            result = await gateway.call_tool(RecordKind.CREDIT_REPORT.value)
            assert isinstance(result.error, HttpStatusError)
            assert result.error.code == 500
        finally:
            await gateway.aclose()
            await engine.dispose()

    asyncio.run(scenario())


def test_call_tool_empty_content(session_store_factory):
    async def scenario():
        store, engine = await session_store_factory()
        gateway = _client(store, FakeGateway())
        try:
            result = await gateway.call_tool(RecordKind.EPF_DETAILS.value)
            assert isinstance(result.error, EmptyResultError)
        finally:
            await gateway.aclose()
            await engine.dispose()

    asyncio.run(scenario())


def test_call_tool_rejects_unknown_tool(session_store_factory):
    async def scenario():
        store, engine = await session_store_factory()
        fake = FakeGateway()
        gateway = _client(store, fake)
        try:
            result = await gateway.call_tool("fetch_everything")
            assert isinstance(result.error, FetchError)
            assert fake.requests == []
        finally:
            await gateway.aclose()
            await engine.dispose()

    asyncio.run(scenario())


# ---------------------------------------------------------------------------
# Test 6: agent client
# ---------------------------------------------------------------------------

def test_agent_start_posts_query():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"status": "started", "message": "queued"})

    async def scenario():
        agent = AgentClient(AGENT_URL, transport=httpx.MockTransport(handler))
        try:
            result = await agent.start("1414141414", "session_1_abc", "How much did I spend?")
            assert result.ok
            assert result.value.status == "started"
            assert seen[0].url.path == "/start/"
            assert json.loads(seen[0].content) == {
                "user_id": "1414141414",
                "session_id": "session_1_abc",
                "query": "How much did I spend?",
            }
        finally:
            await agent.aclose()

    asyncio.run(scenario())


def test_agent_http_failure():
    async def scenario():
        agent = AgentClient(AGENT_URL, transport=httpx.MockTransport(lambda r: httpx.Response(503)))
        try:
            result = await agent.start("u", "s", "q")
            assert isinstance(result.error, HttpStatusError)
            assert result.error.code == 503
        finally:
            await agent.aclose()

    asyncio.run(scenario())


def test_agent_unreadable_ack():
    async def scenario():
        agent = AgentClient(AGENT_URL, transport=httpx.MockTransport(lambda r: httpx.Response(200, text="ok!")))
        try:
            result = await agent.start("u", "s", "q")
            assert isinstance(result.error, DecodeError)
        finally:
            await agent.aclose()

    asyncio.run(scenario())


def test_agent_transport_failure():
    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    async def scenario():
        agent = AgentClient(AGENT_URL, transport=httpx.MockTransport(unreachable))
        try:
            result = await agent.start("u", "s", "q")
            assert isinstance(result.error, NetworkError)
        finally:
            await agent.aclose()

    asyncio.run(scenario())
