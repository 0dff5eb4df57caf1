from __future__ import annotations

import json
from typing import Any, AsyncIterator

import httpx

from carely_agent_core.controller import StreamEvent
from carely_agent_core.errors import (
    CarelyError,
    Forbidden,
    ModelInvocationFailed,
    NotFound,
    PersistenceConflict,
    TransportError,
    TurnInFlight,
)
from carely_agent_core.models import FilePart, Turn
from observability.logging import get_logger

logger = get_logger(__name__)

_STREAM_ERRORS: dict[str, type[CarelyError]] = {
    cls.code: cls for cls in (ModelInvocationFailed, PersistenceConflict, TurnInFlight, Forbidden, NotFound)
}


def _detail(response: httpx.Response) -> tuple[str | None, str]:
    try:
        payload = response.json()
    except ValueError:
        return None, response.text.strip() or f"HTTP {response.status_code}"
    detail = payload.get("detail") if isinstance(payload, dict) else None
    if isinstance(detail, dict):
        return detail.get("code"), str(detail.get("message") or detail)
    return None, str(detail or payload)


def _raise_for_status(response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    code, message = _detail(response)
    if response.status_code == 403:
        raise Forbidden(message)
    if response.status_code == 404:
        raise NotFound(message)
    if response.status_code == 409:
        if code == TurnInFlight.code:
            raise TurnInFlight(message)
        raise PersistenceConflict(message)
    raise TransportError(message, status_code=response.status_code)


def _stream_error(data: dict[str, Any]) -> CarelyError:
    cls = _STREAM_ERRORS.get(str(data.get("code")), CarelyError)
    error = cls(str(data.get("message") or "Chat stream failed."))
    error.retryable = bool(data.get("retryable", error.retryable))
    return error


class SSEDecoder:
    """Incremental decoder for `event:` / `data:` frames with JSON payloads."""

    def __init__(self) -> None:
        self._event = "message"
        self._data_lines: list[str] = []

    def feed(self, raw_line: str) -> StreamEvent | None:
        line = raw_line.rstrip("\r")
        if not line:
            return self.flush()
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            self._event = value
        elif field == "data":
            self._data_lines.append(value)
        return None

    def flush(self) -> StreamEvent | None:
        event = None
        if self._data_lines:
            event = StreamEvent(self._event, json.loads("\n".join(self._data_lines)))
        self._event = "message"
        self._data_lines = []
        return event


def parse_sse(payload_text: str) -> list[StreamEvent]:
    decoder = SSEDecoder()
    events = [decoder.feed(line) for line in payload_text.splitlines()]
    events.append(decoder.flush())
    return [event for event in events if event is not None]


async def decode_sse(lines: AsyncIterator[str]) -> AsyncIterator[StreamEvent]:
    decoder = SSEDecoder()
    async for raw_line in lines:
        event = decoder.feed(raw_line)
        if event is not None:
            yield event
    event = decoder.flush()
    if event is not None:
        yield event


class ChatTransport:
    """HTTP client for the chat backend, one instance per signed-in principal."""

    def __init__(
        self,
        base_url: str,
        *,
        user_id: str | None = None,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_seconds: float = 120.0,
    ) -> None:
        default_headers = {"Authorization": f"Bearer {user_id}"} if user_id else {}
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={**default_headers, **(headers or {})},
            transport=transport,
            timeout=httpx.Timeout(timeout_seconds, connect=8.0),
        )

    async def __aenter__(self) -> "ChatTransport":
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise TransportError(f"Request failed: {exc}") from exc
        _raise_for_status(response)
        return response.json()

    async def create_conversation(self, conversation_id: str | None = None) -> dict[str, Any]:
        return await self._request("POST", "/conversations", json={"id": conversation_id})

    async def read_transcript(self, conversation_id: str) -> dict[str, Any]:
        snapshot = await self._request("GET", f"/conversations/{conversation_id}")
        snapshot["turns"] = [Turn.from_dict(raw) for raw in snapshot.get("turns") or []]
        return snapshot

    async def record_tool_result(
        self,
        conversation_id: str,
        tool_call_id: str,
        output: Any,
        *,
        is_error: bool = False,
        turn_id: str | None = None,
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/conversations/{conversation_id}/tool-results",
            json={"tool_call_id": tool_call_id, "output": output, "is_error": is_error, "turn_id": turn_id},
        )

    async def stream_turn(self, conversation_id: str, turn: Turn) -> AsyncIterator[StreamEvent]:
        """Submit a human turn and yield its stream events.

        An ``error`` event is raised as the matching CarelyError instead of being yielded.
        """
        body = {
            "id": turn.id,
            "text": turn.text,
            "visible": turn.visible,
            "attachments": [
                {"url": part.url, "media_type": part.media_type, "filename": part.filename}
                for part in turn.parts
                if isinstance(part, FilePart)
            ],
        }
        try:
            async with self._client.stream(
                "POST",
                f"/conversations/{conversation_id}/chat/stream",
                json=body,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    _raise_for_status(response)
                async for event in decode_sse(response.aiter_lines()):
                    if event.event == "error":
                        logger.warning("chat_stream_error_event", conversation_id=conversation_id, code=event.data.get("code"))
                        raise _stream_error(event.data)
                    yield event
        except httpx.HTTPError as exc:
            raise TransportError(f"Stream failed: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise TransportError(f"Malformed stream event: {exc}") from exc
