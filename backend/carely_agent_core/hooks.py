from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from observability.logging import get_logger

from .models import ExecutionContext, ToolExecutionResult
from .registry import ToolDefinition

logger = get_logger(__name__)


BeforeHook = Callable[[ExecutionContext, ToolDefinition, dict[str, Any]], "HookDecision"]
AfterHook = Callable[[ExecutionContext, ToolDefinition, dict[str, Any], ToolExecutionResult], None]


@dataclass(frozen=True)
class HookDecision:
    allowed: bool
    code: str = "ok"
    message: str = "allowed"


class HookRunner:
    """Ordered before/after hooks around autonomous tool execution.

    Before hooks see validated input and may block the call; the first blocking decision
    wins. After hooks observe the final result. An after hook that raises is logged and
    skipped, because the tool's side effects have already happened by then.
    """

    def __init__(self) -> None:
        self._before_hooks: list[BeforeHook] = []
        self._after_hooks: list[AfterHook] = []

    def add_before(self, hook: BeforeHook) -> None:
        self._before_hooks.append(hook)

    def add_after(self, hook: AfterHook) -> None:
        self._after_hooks.append(hook)

    def run_before(self, ctx: ExecutionContext, tool: ToolDefinition, payload: dict[str, Any]) -> HookDecision:
        for hook in self._before_hooks:
            decision = hook(ctx, tool, payload)
            if not decision.allowed:
                return decision
        return HookDecision(allowed=True)

    def run_after(
        self,
        ctx: ExecutionContext,
        tool: ToolDefinition,
        payload: dict[str, Any],
        result: ToolExecutionResult,
    ) -> None:
        for hook in self._after_hooks:
            try:
                hook(ctx, tool, payload, result)
            except Exception as exc:
                logger.error(
                    "tool_after_hook_failed",
                    tool_name=tool.name,
                    tool_call_id=ctx.tool_call_id,
                    error=str(exc),
                )
