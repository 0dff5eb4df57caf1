from __future__ import annotations

from typing import Any

from observability.logging import get_logger

from .errors import ToolExecutionFailed, ToolInputInvalid
from .hooks import HookRunner
from .models import ExecutionContext, ToolExecutionResult
from .registry import ToolRegistry

logger = get_logger(__name__)

_RESULT_STATES = {"succeeded", "failed"}


def _failure(code: str, message: str) -> ToolExecutionResult:
    return ToolExecutionResult(status="failed", data={}, errors=[{"code": code, "message": message}])


class AgentExecutor:
    """Runs autonomous tools for the Turn Controller.

    Nothing raised by validation, hooks or handlers escapes: every outcome is a
    ToolExecutionResult so the model can read failures as ordinary tool output.
    """

    def __init__(self, *, registry: ToolRegistry, hooks: HookRunner) -> None:
        self.registry = registry
        self.hooks = hooks

    def validate(self, tool_name: str, payload: Any) -> dict[str, Any]:
        try:
            tool = self.registry.resolve(tool_name)
        except KeyError as exc:
            raise ToolInputInvalid(f"Unknown tool: {tool_name}", tool_name=tool_name) from exc
        return tool.validate_input(payload)

    def execute(self, ctx: ExecutionContext, tool_name: str, payload: Any) -> ToolExecutionResult:
        tool = self.registry.get(tool_name)
        if tool is None:
            logger.warning("tool_unknown", tool_name=tool_name, tool_call_id=ctx.tool_call_id)
            return _failure("unknown_tool", f"Tool '{tool_name}' does not exist.")
        if tool.interactive or tool.handler is None:
            return _failure("interactive_tool", f"Tool '{tool_name}' requires a decision from the patient.")

        try:
            validated = tool.validate_input(payload)
        except ToolInputInvalid as exc:
            logger.info("tool_input_invalid", tool_name=tool_name, tool_call_id=ctx.tool_call_id, error=exc.message)
            return _failure(exc.code, exc.message)

        decision = self.hooks.run_before(ctx, tool, validated)
        if not decision.allowed:
            logger.warning("tool_call_blocked", tool_name=tool_name, tool_call_id=ctx.tool_call_id, code=decision.code)
            result = _failure(decision.code, decision.message)
            self.hooks.run_after(ctx, tool, validated, result)
            return result

        try:
            tool_output = tool.handler(ctx, validated)
        except Exception as exc:
            failure = ToolExecutionFailed(str(exc) or exc.__class__.__name__, tool_name=tool_name)
            logger.error(
                "tool_execution_failed",
                tool_name=tool_name,
                tool_call_id=ctx.tool_call_id,
                error=failure.message,
            )
            result = _failure(failure.code, failure.message)
            self.hooks.run_after(ctx, tool, validated, result)
            return result

        status = tool_output.get("status", "succeeded")
        if status not in _RESULT_STATES:
            status = "succeeded"
        result = ToolExecutionResult(
            status=status,
            data=tool_output.get("data") or {},
            errors=tool_output.get("errors") or [],
        )
        self.hooks.run_after(ctx, tool, validated, result)
        return result
