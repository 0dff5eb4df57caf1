from __future__ import annotations

import importlib
import sys
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from carely_agent_core.provider import StepFinish, TextDelta, ToolCallRequest  # noqa: E402


class ScriptedProvider:
    """Model stand-in that replays one scripted step per model call.

    A step is a list of TextDelta / ToolCallRequest events, or an exception to raise.
    Once the script runs out every call answers with a short text.
    """

    def __init__(self, steps: list[Any] | None = None, label: Any = "Headache") -> None:
        self.steps = list(steps or [])
        self.label = label
        self.calls: list[dict[str, Any]] = []
        self.label_prompts: list[str] = []

    def add(self, *steps: Any) -> "ScriptedProvider":
        self.steps.extend(steps)
        return self

    def stream_step(
        self,
        *,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> Iterator[Any]:
        self.calls.append({"system_prompt": system_prompt, "messages": messages, "tools": tools})
        step = self.steps.pop(0) if self.steps else [TextDelta("Okay.")]
        if isinstance(step, Exception):
            raise step
        yield from step
        yield StepFinish("tool_calls" if any(isinstance(event, ToolCallRequest) for event in step) else "stop")

    def complete(self, *, system_prompt: str, prompt: str) -> str:
        self.label_prompts.append(prompt)
        if isinstance(self.label, Exception):
            raise self.label
        return self.label


def say(text: str) -> list[Any]:
    return [TextDelta(text)]


def tool_call(name: str, payload: Any, call_id: str = "") -> ToolCallRequest:
    return ToolCallRequest(tool_call_id=call_id, tool_name=name, input=payload)


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    db_path = tmp_path / "carely-test.sqlite"
    monkeypatch.setenv("CARELY_DB_PATH", str(db_path))
    monkeypatch.setenv("ALLOW_ANON", "false")
    # Keep CI deterministic; dedicated tests can override these.
    monkeypatch.setenv("CARELY_DISABLE_EXTERNAL_WEB", "true")
    monkeypatch.delenv("RESEND_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    monkeypatch.setenv("CARELY_LOG_FORMAT", "console")

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def provider(backend_module) -> ScriptedProvider:
    scripted = ScriptedProvider()
    backend_module.container.provider = scripted
    return scripted


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    def _make(user_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {user_id}"}

    return _make


@pytest.fixture
def conversation_id(client, auth_headers) -> str:
    response = client.post("/conversations", json={"id": "conv-alice"}, headers=auth_headers("alice"))
    assert response.status_code == 200
    return response.json()["id"]
