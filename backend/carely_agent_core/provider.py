from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Iterator, Protocol, Union

import httpx

from observability.logging import get_logger

from .errors import ModelInvocationFailed
from .models import FilePart, TextPart, ToolCallPart, ToolResultPart, Turn

logger = get_logger(__name__)


@dataclass(frozen=True)
class TextDelta:
    delta: str


@dataclass(frozen=True)
class ToolCallRequest:
    tool_call_id: str
    tool_name: str
    input: Any


@dataclass(frozen=True)
class StepFinish:
    finish_reason: str


ModelEvent = Union[TextDelta, ToolCallRequest, StepFinish]


class ModelProvider(Protocol):
    def stream_step(
        self,
        *,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> Iterator[ModelEvent]: ...

    def complete(self, *, system_prompt: str, prompt: str) -> str: ...


def _user_content(turn: Turn) -> str:
    chunks: list[str] = []
    for part in turn.parts:
        if isinstance(part, TextPart) and part.text.strip():
            chunks.append(part.text)
        elif isinstance(part, FilePart):
            label = part.filename or part.url
            chunks.append(f"[Attached file: {label} ({part.media_type}) {part.url}]")
    return "\n".join(chunks)


def _tool_message(result: ToolResultPart) -> dict[str, Any]:
    return {
        "role": "tool",
        "tool_call_id": result.tool_call_id,
        "content": json.dumps(result.output, ensure_ascii=True, default=str),
    }


def to_model_messages(turns: list[Turn]) -> list[dict[str, Any]]:
    """Convert a transcript into chat-completions messages.

    Tool results always follow the assistant message that requested them: inside an
    assistant turn they close the current step, in a human turn they precede its text.
    """
    messages: list[dict[str, Any]] = []
    for turn in turns:
        if turn.role == "human":
            for result in turn.tool_results:
                messages.append(_tool_message(result))
            content = _user_content(turn)
            if content:
                messages.append({"role": "user", "content": content})
            continue

        text_chunks: list[str] = []
        calls: list[ToolCallPart] = []
        results: list[ToolResultPart] = []

        def flush() -> None:
            if text_chunks or calls:
                message: dict[str, Any] = {"role": "assistant", "content": "".join(text_chunks) or None}
                if calls:
                    message["tool_calls"] = [
                        {
                            "id": call.tool_call_id,
                            "type": "function",
                            "function": {
                                "name": call.tool_name,
                                "arguments": call.input
                                if isinstance(call.input, str)
                                else json.dumps(call.input, ensure_ascii=True),
                            },
                        }
                        for call in calls
                    ]
                messages.append(message)
            messages.extend(_tool_message(result) for result in results)
            text_chunks.clear()
            calls.clear()
            results.clear()

        for part in turn.parts:
            if isinstance(part, ToolResultPart):
                results.append(part)
                continue
            if results:
                flush()
            if isinstance(part, TextPart):
                text_chunks.append(part.text)
            elif isinstance(part, ToolCallPart):
                calls.append(part)
        flush()
    return messages


def _provider_error_message(response: httpx.Response) -> str:
    message = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        msg = payload.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return message or f"HTTP {response.status_code}"


def _parse_arguments(raw: str) -> Any:
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


class OpenAICompatibleProvider:
    def __init__(
        self,
        *,
        name: str,
        base_url: str,
        api_key: str,
        model: str,
        label_model: str | None = None,
        timeout_seconds: float = 60.0,
        extra_headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.label_model = label_model or model
        self.timeout_seconds = timeout_seconds
        self.extra_headers = extra_headers or {}
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=httpx.Timeout(self.timeout_seconds, connect=8.0),
            transport=self._transport,
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            **self.extra_headers,
        }

    def stream_step(
        self,
        *,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> Iterator[ModelEvent]:
        payload: dict[str, Any] = {
            "model": self.model,
            "stream": True,
            "messages": [{"role": "system", "content": system_prompt}, *messages],
        }
        if tools:
            payload["tools"] = tools
        pending: dict[int, dict[str, str]] = {}
        finish_reason = "stop"
        try:
            with self._client() as client:
                with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    headers=self._headers(),
                    json=payload,
                ) as response:
                    if response.status_code >= 400:
                        response.read()
                        raise ModelInvocationFailed(_provider_error_message(response), provider=self.name)
                    for line in response.iter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line[5:].strip()
                        if not data or data == "[DONE]":
                            continue
                        chunk = json.loads(data)
                        choices = chunk.get("choices") or []
                        if not choices:
                            continue
                        choice = choices[0]
                        delta = choice.get("delta") or {}
                        content = delta.get("content")
                        if isinstance(content, str) and content:
                            yield TextDelta(content)
                        for call_delta in delta.get("tool_calls") or []:
                            slot = pending.setdefault(
                                int(call_delta.get("index", 0)), {"id": "", "name": "", "arguments": ""}
                            )
                            function = call_delta.get("function") or {}
                            slot["id"] = call_delta.get("id") or slot["id"]
                            slot["name"] = function.get("name") or slot["name"]
                            slot["arguments"] += function.get("arguments") or ""
                        if choice.get("finish_reason"):
                            finish_reason = str(choice["finish_reason"])
        except httpx.HTTPError as exc:
            raise ModelInvocationFailed(f"Model transport error: {exc}", provider=self.name) from exc
        except json.JSONDecodeError as exc:
            raise ModelInvocationFailed(f"Malformed model stream: {exc}", provider=self.name) from exc

        for index in sorted(pending):
            slot = pending[index]
            yield ToolCallRequest(
                tool_call_id=slot["id"] or f"call_{index}",
                tool_name=slot["name"],
                input=_parse_arguments(slot["arguments"]),
            )
        yield StepFinish(finish_reason)

    def complete(self, *, system_prompt: str, prompt: str) -> str:
        payload = {
            "model": self.label_model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
        }
        try:
            with self._client() as client:
                response = client.post(f"{self.base_url}/chat/completions", headers=self._headers(), json=payload)
        except httpx.HTTPError as exc:
            raise ModelInvocationFailed(f"Model transport error: {exc}", provider=self.name) from exc
        if response.status_code >= 400:
            raise ModelInvocationFailed(_provider_error_message(response), provider=self.name)
        choices = response.json().get("choices") or []
        if not choices:
            return ""
        content = (choices[0].get("message") or {}).get("content")
        return content if isinstance(content, str) else ""


class UnconfiguredProvider:
    """Stand-in used when no provider key is present; every call fails retryably."""

    name = "unconfigured"

    def stream_step(self, **_: Any) -> Iterator[ModelEvent]:
        raise ModelInvocationFailed("No chat model provider is configured.")

    def complete(self, **_: Any) -> str:
        raise ModelInvocationFailed("No chat model provider is configured.")


def build_provider_from_env() -> ModelProvider:
    preference = (os.getenv("CARELY_CHAT_PROVIDER") or "auto").strip().lower()
    timeout_seconds = float(os.getenv("CARELY_CHAT_TIMEOUT_SECONDS", "60"))
    label_model = (os.getenv("CARELY_LABEL_MODEL") or "").strip() or None
    candidates: list[OpenAICompatibleProvider] = []

    openai_api_key = (os.getenv("OPENAI_API_KEY") or "").strip()
    if openai_api_key:
        candidates.append(
            OpenAICompatibleProvider(
                name="openai",
                base_url=os.getenv("OPENAI_API_BASE_URL", "https://api.openai.com/v1"),
                api_key=openai_api_key,
                model=(os.getenv("CARELY_CHAT_MODEL") or "gpt-4o-mini").strip(),
                label_model=label_model,
                timeout_seconds=timeout_seconds,
            )
        )

    openrouter_api_key = (os.getenv("OPENROUTER_API_KEY") or "").strip()
    if openrouter_api_key:
        headers: dict[str, str] = {}
        site_url = (os.getenv("OPENROUTER_SITE_URL") or "").strip()
        if site_url:
            headers["HTTP-Referer"] = site_url
        headers["X-Title"] = (os.getenv("OPENROUTER_APP_NAME") or "Carely").strip()
        candidates.append(
            OpenAICompatibleProvider(
                name="openrouter",
                base_url=os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1"),
                api_key=openrouter_api_key,
                model=(os.getenv("OPENROUTER_MODEL") or "openai/gpt-4o-mini").strip(),
                label_model=label_model,
                timeout_seconds=timeout_seconds,
                extra_headers=headers,
            )
        )

    if not candidates:
        logger.warning("chat_provider_unconfigured")
        return UnconfiguredProvider()
    preferred = [candidate for candidate in candidates if candidate.name == preference]
    chosen = (preferred or candidates)[0]
    logger.info("chat_provider_selected", provider=chosen.name, model=chosen.model)
    return chosen
