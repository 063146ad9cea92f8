"""
Shared test setup.

The default engine in database.py is pointed at a throwaway SQLite file
before any test module imports it. Tests that need their own session store
build one on a per-test file and dispose it inside the same event loop.
"""

import json
import os
import sys
import tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))
_TMP_DIR = tempfile.mkdtemp(prefix="artha-sync-test-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR}/session.db"

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from database import SessionStore, create_tables

GATEWAY_URL = "https://gateway.test/"
AGENT_URL = "https://agent.test"
SESSION_TOKEN = "mcp-session-test"


def tool_envelope(text: str) -> dict:
    """JSON-RPC tools/call response carrying `text` as result.content[0].text."""
    return {"jsonrpc": "2.0", "id": 1, "result": {"content": [{"type": "text", "text": text}]}}


def net_worth_payload(units: str | int = "1000000") -> str:
    return json.dumps({
        "netWorthResponse": {
            "assetValues": [
                {"netWorthAttribute": "ASSET_TYPE_MUTUAL_FUND", "value": {"currencyCode": "INR", "units": "84642"}},
            ],
            "totalNetWorthValue": {"currencyCode": "INR", "units": units},
        }
    })


def bank_payload() -> str:
    return json.dumps({
        "bankTransactions": [
            {"bank": "HDFC", "txns": [["2024-06-01", "UPI/SWIGGY", 450.0, 2], ["2024-06-02"]]},
        ],
        "schemaDescription": "date, narration, amount, type",
    })


class FakeGateway:
    """
    Mock gateway routes for httpx.MockTransport.

    `tools` maps tool name -> response text (wrapped in an envelope) or a
    ready httpx.Response. Unlisted tools answer with an empty content list.
    """

    def __init__(self, tools: dict | None = None, login_status: int = 200, session_status: int = 200) -> None:
        self.tools = dict(tools or {})
        self.login_status = login_status
        self.session_status = session_status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/mockWebPage"):
            return httpx.Response(self.session_status, text="<html></html>")
        if path.endswith("/login"):
            return httpx.Response(self.login_status, text="ok")
        if path.endswith("/mcp/stream"):
            name = json.loads(request.content)["params"]["name"]
            answer = self.tools.get(name)
            if isinstance(answer, httpx.Response):
                return answer
            if answer is None:
                return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"content": []}})
            return httpx.Response(200, json=tool_envelope(answer))
        return httpx.Response(404)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def session_store_factory(tmp_path):
    """Async factory returning (SessionStore, engine) on a fresh SQLite file."""

    async def make(name: str = "session.db"):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / name}")
        await create_tables(engine)
        return SessionStore(async_sessionmaker(engine, expire_on_commit=False)), engine

    return make
