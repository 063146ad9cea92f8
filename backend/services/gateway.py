"""
Gateway client for the mock financial-data backend.

Two surfaces:
- login: GET mockWebPage (session bootstrap) then form POST login
- tools: JSON-RPC tools/call POSTed to mcp/stream with Mcp-Session-Id

The gateway session token is a fixed well-known constant, not per-login.
TLS verification is OFF by default because the backend runs behind a
development tunnel with a self-signed certificate. That is a compatibility
setting for the current backend, not a security feature: set
GATEWAY_VERIFY_TLS=true against any real deployment.
"""

import logging
import os
from urllib.parse import urlparse

import httpx
from dotenv import load_dotenv

from database import SessionStore
from schemas.financial import RecordKind
from services.decoder import decode_envelope
from services.errors import AuthError, FetchError, HttpStatusError, NetworkError, Result

load_dotenv()

logger = logging.getLogger(__name__)

GATEWAY_BASE_URL = os.getenv("GATEWAY_BASE_URL", "https://fi-mcp-dev-k57r.onrender.com/")
GATEWAY_SESSION_TOKEN = os.getenv(
    "GATEWAY_SESSION_TOKEN", "mcp-session-594e48ea-fea1-40ef-8c52-7552dd9272af"
)
GATEWAY_VERIFY_TLS = os.getenv("GATEWAY_VERIFY_TLS", "false").lower() in {"1", "true", "yes"}
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "60"))

TOOL_NAMES: tuple[str, ...] = tuple(k.value for k in RecordKind)

_TOOL_LABELS = {
    RecordKind.BANK_TRANSACTIONS.value: "bank transactions",
    RecordKind.NET_WORTH.value: "net worth",
    RecordKind.EPF_DETAILS.value: "EPF details",
    RecordKind.CREDIT_REPORT.value: "credit report",
    RecordKind.MF_TRANSACTIONS.value: "MF transactions",
    RecordKind.STOCK_TRANSACTIONS.value: "stock transactions",
}


def jsonrpc_request(tool_name: str) -> dict:
    return {
        "jsonrpc": "2.0",
        "id": 1,
        "method": "tools/call",
        "params": {"name": tool_name, "arguments": {}},
    }


class GatewayClient:
    def __init__(
        self,
        session_store: SessionStore,
        base_url: str = GATEWAY_BASE_URL,
        session_token: str = GATEWAY_SESSION_TOKEN,
        verify_tls: bool = GATEWAY_VERIFY_TLS,
        timeout: float = GATEWAY_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._session_store = session_store
        self._session_token = session_token

        if not base_url.endswith("/"):
            base_url += "/"

        headers = {"User-Agent": "Artha-Sync/1.0", "Accept": "*/*"}
        if "devtunnels.ms" in (urlparse(base_url).hostname or ""):
            headers["X-Forwarded-Proto"] = "https"

        if not verify_tls:
            logger.warning("TLS certificate validation disabled for gateway %s", base_url)

        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout),
            verify=verify_tls,
            transport=transport,
        )

    @property
    def session_token(self) -> str:
        return self._session_token

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "GatewayClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ── login ─────────────────────────────────────────────────────────────────

    async def login(self, phone_number: str) -> Result[None]:
        """
        Two-step handshake. Both calls must return 2xx; the first failure aborts
        the sequence with its status. No retry. On success the phone number and
        the constant session token are persisted together.
        """
        token = self._session_token
        logger.info("Starting authentication for %s", phone_number)

        try:
            logger.debug("Step 1: session bootstrap")
            resp = await self._client.get("mockWebPage", params={"sessionId": token})
            logger.info("Session bootstrap returned HTTP %s", resp.status_code)
            if not resp.is_success:
                return Result.failure(AuthError(
                    "session",
                    f"Session generation failed: HTTP {resp.status_code}",
                    resp.status_code,
                ))

            logger.debug("Step 2: login simulation")
            resp = await self._client.post(
                "login", data={"sessionId": token, "phoneNumber": phone_number}
            )
            logger.info("Login returned HTTP %s", resp.status_code)
            if not resp.is_success:
                return Result.failure(AuthError(
                    "login",
                    f"Login failed: HTTP {resp.status_code}",
                    resp.status_code,
                ))
        except httpx.TransportError as exc:
            logger.error("Authentication transport error: %s", exc)
            return Result.failure(NetworkError(f"Network error during login: {exc}"))

        if not await self._session_store.save(phone_number, token):
            return Result.failure(AuthError("persist", "Could not store the session locally"))

        logger.info("Authentication completed for %s", phone_number)
        return Result.success(None)

    # ── tools ─────────────────────────────────────────────────────────────────

    async def call_tool(self, tool_name: str, session_token: str | None = None) -> Result[str]:
        """
        POST a tools/call request and return result.content[0].text unparsed.

        Token defaults to the stored session token, then the constant.
        """
        if tool_name not in TOOL_NAMES:
            return Result.failure(FetchError(f"Unknown tool: {tool_name}"))

        label = _TOOL_LABELS[tool_name]
        token = session_token or await self._session_store.current_session_token() or self._session_token
        logger.info("Fetching %s", label)

        try:
            resp = await self._client.post(
                "mcp/stream",
                json=jsonrpc_request(tool_name),
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json, text/event-stream",
                    "Mcp-Session-Id": token,
                },
            )
        except httpx.TransportError as exc:
            logger.error("Error fetching %s: %s", label, exc)
            return Result.failure(NetworkError(f"Network error fetching {label}: {exc}"))

        if not resp.is_success:
            logger.error("Failed to fetch %s: HTTP %s", label, resp.status_code)
            return Result.failure(HttpStatusError(
                resp.status_code, f"Failed to fetch {label}: HTTP {resp.status_code}"
            ))

        result = decode_envelope(resp.text, resp.headers.get("content-type", ""))
        if result.ok:
            logger.info("Fetched %s", label)
        else:
            logger.error("Unusable %s response: %s", label, result.error)
        return result
