from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from pydantic import BaseModel, ValidationError

from .errors import ToolInputInvalid
from .models import TOOL_MODES


ToolHandler = Callable[[Any, dict[str, Any]], dict[str, Any]]
SkipOutput = Callable[[dict[str, Any]], dict[str, Any]]


def _format_validation_errors(exc: ValidationError) -> str:
    messages: list[str] = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "input"
        messages.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(messages)


@dataclass
class ToolDefinition:
    name: str
    description: str
    input_model: type[BaseModel]
    mode: str = "autonomous"
    handler: ToolHandler | None = None
    skip_output: SkipOutput | None = None

    def __post_init__(self) -> None:
        if self.mode not in TOOL_MODES:
            raise ValueError(f"Unknown tool mode for {self.name}: {self.mode}")
        if self.mode == "autonomous" and self.handler is None:
            raise ValueError(f"Autonomous tool {self.name} requires a handler.")
        if self.mode == "interactive":
            if self.handler is not None:
                raise ValueError(f"Interactive tool {self.name} cannot register a handler.")
            if self.skip_output is None:
                raise ValueError(f"Interactive tool {self.name} requires a skip value.")

    @property
    def interactive(self) -> bool:
        return self.mode == "interactive"

    def validate_input(self, payload: Any) -> dict[str, Any]:
        try:
            model = self.input_model.model_validate(payload)
        except ValidationError as exc:
            raise ToolInputInvalid(
                f"Invalid input for {self.name}: {_format_validation_errors(exc)}",
                tool_name=self.name,
            ) from exc
        return model.model_dump(exclude_none=True)

    def schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_model.model_json_schema(),
            },
        }


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def resolve(self, name: str) -> ToolDefinition:
        tool = self._tools.get(name)
        if not tool:
            raise KeyError(f"Tool not found: {name}")
        return tool

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def list_names(self) -> list[str]:
        return sorted(self._tools.keys())

    def interactive_names(self) -> set[str]:
        return {name for name, tool in self._tools.items() if tool.interactive}

    def schemas(self) -> list[dict[str, Any]]:
        return [self._tools[name].schema() for name in self.list_names()]
