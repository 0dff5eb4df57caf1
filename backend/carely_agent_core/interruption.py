from __future__ import annotations

from observability.logging import get_logger

from .models import ToolCallPart, ToolResultPart, Turn
from .registry import ToolRegistry

logger = get_logger(__name__)


def skip_results(registry: ToolRegistry, pending: list[ToolCallPart]) -> list[ToolResultPart]:
    results: list[ToolResultPart] = []
    for call in pending:
        tool = registry.get(call.tool_name)
        if tool is not None and tool.skip_output is not None:
            output = tool.skip_output(call.input if isinstance(call.input, dict) else {})
        else:
            output = {"skippedByUser": True}
        results.append(ToolResultPart(tool_call_id=call.tool_call_id, tool_name=call.tool_name, output=output))
    return results


def build_skip_turn(registry: ToolRegistry, pending: list[ToolCallPart]) -> Turn | None:
    """Hidden resolution turn that closes every still-pending interactive call."""
    if not pending:
        return None
    logger.info("interactive_calls_skipped", tool_call_ids=[call.tool_call_id for call in pending])
    return Turn.resolution(skip_results(registry, pending))
