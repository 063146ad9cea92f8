"""
Client for the external conversational agent.

POST /start/ only queues the query. The agent writes its thinking and final
answer into the realtime store later, so a successful call means "accepted",
never "answered".
"""

import logging
import os

import httpx
from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError

from services.errors import DecodeError, HttpStatusError, NetworkError, Result

load_dotenv()

logger = logging.getLogger(__name__)

AGENT_BASE_URL = os.getenv("AGENT_BASE_URL", "https://adityachaudhary2913-agent-artha.hf.space")
AGENT_CONNECT_TIMEOUT_SECONDS = float(os.getenv("AGENT_CONNECT_TIMEOUT_SECONDS", "30"))
AGENT_READ_TIMEOUT_SECONDS = float(os.getenv("AGENT_READ_TIMEOUT_SECONDS", "60"))

_ENDPOINT = "/start/"


class AgentAck(BaseModel):
    status: str = ""
    message: str = ""


class AgentClient:
    def __init__(
        self,
        base_url: str = AGENT_BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(
                AGENT_READ_TIMEOUT_SECONDS,
                connect=AGENT_CONNECT_TIMEOUT_SECONDS,
                write=AGENT_CONNECT_TIMEOUT_SECONDS,
            ),
            headers={"Accept": "application/json"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def start(self, user_id: str, session_id: str, query: str) -> Result[AgentAck]:
        preview = query[:100] + ("..." if len(query) > 100 else "")
        logger.info("Sending query to agent: user=%s session=%s", user_id, session_id)
        logger.debug("Query preview: %s", preview)

        try:
            resp = await self._client.post(
                _ENDPOINT,
                json={"user_id": user_id, "session_id": session_id, "query": query},
            )
        except httpx.TransportError as exc:
            logger.error("Agent request failed: %s", exc)
            return Result.failure(NetworkError(f"Could not reach the agent: {exc}"))

        if not resp.is_success:
            logger.error("Agent error: HTTP %s %s", resp.status_code, resp.text[:200])
            return Result.failure(HttpStatusError(
                resp.status_code, f"API call failed: HTTP {resp.status_code}"
            ))

        try:
            ack = AgentAck.model_validate_json(resp.content or b"{}")
        except ValidationError as exc:
            logger.error("Agent acknowledgement unreadable: %s", exc)
            return Result.failure(DecodeError.malformed("Agent returned an unreadable acknowledgement"))

        logger.info("Agent accepted query: status=%s", ack.status)
        return Result.success(ack)
