"""
Payload decoder for gateway tool calls.

Tool responses are double-encoded: a JSON-RPC envelope whose
result.content[0].text is itself a JSON document. decode_envelope() unwraps
the outer layer, decode() turns the inner text into one of the six typed
records. Neither raises; both return a Result.
"""

import json
import logging
from typing import Any

from pydantic import ValidationError

from schemas.financial import RECORD_MODELS, FinancialRecord, RecordKind
from services.errors import DecodeError, EmptyResultError, Result, RpcError
from services.sse import parse_events

logger = logging.getLogger(__name__)


def _last_sse_data(body: str) -> str:
    """Return the data of the last event in a text/event-stream body."""
    data = [event.data for event in parse_events(body.splitlines()) if event.data]
    return data[-1] if data else ""


def decode_envelope(body: str, content_type: str = "") -> Result[str]:
    """
    Extract result.content[0].text from a JSON-RPC tools/call response.

    Failures:
    - body is not JSON / not an object  -> DecodeError(MALFORMED)
    - envelope carries an error member  -> RpcError
    - content missing, empty, or first element has no text -> EmptyResultError
    """
    if "text/event-stream" in content_type:
        body = _last_sse_data(body)

    if not body or not body.strip():
        return Result.failure(EmptyResultError("Tool call returned an empty body"))

    try:
        envelope = json.loads(body)
    except json.JSONDecodeError as exc:
        return Result.failure(DecodeError.malformed(f"Invalid JSON-RPC envelope: {exc}"))

    if not isinstance(envelope, dict):
        return Result.failure(DecodeError.malformed("JSON-RPC envelope is not an object"))

    error = envelope.get("error")
    if error:
        code = error.get("code") if isinstance(error, dict) else None
        message = error.get("message") if isinstance(error, dict) else str(error)
        return Result.failure(RpcError(code, f"Tool call failed: {message}"))

    result = envelope.get("result")
    content: Any = result.get("content") if isinstance(result, dict) else None
    if not isinstance(content, list) or not content:
        return Result.failure(EmptyResultError("Tool call returned no content"))

    first = content[0]
    text = first.get("text") if isinstance(first, dict) else None
    if not isinstance(text, str) or not text:
        return Result.failure(EmptyResultError("Tool call content has no text"))

    if isinstance(result, dict) and result.get("isError"):
        return Result.failure(RpcError(None, f"Tool reported an error: {text[:200]}"))

    return Result.success(text)


def decode(tool_name: str, raw_text: str | None) -> Result[FinancialRecord]:
    """Deserialize the embedded payload of `tool_name` into its record type."""
    try:
        kind = RecordKind(tool_name)
    except ValueError:
        return Result.failure(DecodeError.malformed(f"Unknown tool: {tool_name}"))

    if raw_text is None or not raw_text.strip():
        return Result.failure(DecodeError.empty())

    try:
        data = json.loads(raw_text)
    except json.JSONDecodeError as exc:
        logger.error("Failed to parse %s payload: %s", kind.value, exc)
        return Result.failure(DecodeError.malformed(f"Failed to parse response: {exc}"))

    if not isinstance(data, dict):
        return Result.failure(DecodeError.malformed(
            f"Expected a JSON object for {kind.value}, got {type(data).__name__}"
        ))

    model = RECORD_MODELS[kind]
    try:
        record = model.model_validate(data)
    except ValidationError as exc:
        logger.error("Payload for %s failed validation: %s", kind.value, exc)
        return Result.failure(DecodeError.malformed(
            f"Response for {kind.value} does not match its schema ({exc.error_count()} errors)"
        ))

    logger.debug("%s decoded", kind.value)
    return Result.success(record)
