from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Iterator

from observability.logging import get_logger

from .errors import ToolInputInvalid
from .executor import AgentExecutor
from .models import (
    ExecutionContext,
    StepBudget,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    Turn,
    new_id,
)
from .provider import ModelProvider, TextDelta, ToolCallRequest, to_model_messages
from .registry import ToolRegistry

logger = get_logger(__name__)

DEFAULT_STEP_BUDGET = 5


@dataclass(frozen=True)
class StreamEvent:
    event: str
    data: dict[str, Any]


@dataclass
class TurnRun:
    """One Turn Controller invocation.

    Iterating yields stream events while the assistant turn is built; once iteration
    finishes, ``turn``, ``finish_reason`` and ``model_calls`` describe the result.
    A ModelInvocationFailed raised by the provider propagates out of the iterator and
    leaves ``finish_reason`` unset.
    """

    controller: "TurnController"
    ctx: ExecutionContext
    system_prompt: str
    transcript: list[Turn]
    turn: Turn = field(default_factory=Turn.assistant)
    budget: StepBudget = field(default_factory=lambda: StepBudget(DEFAULT_STEP_BUDGET))
    finish_reason: str | None = None

    @property
    def model_calls(self) -> int:
        return self.budget.used

    def __iter__(self) -> Iterator[StreamEvent]:
        return self.controller._drive(self)


class TurnController:
    def __init__(
        self,
        *,
        registry: ToolRegistry,
        executor: AgentExecutor,
        provider: ModelProvider,
        step_budget: int = DEFAULT_STEP_BUDGET,
    ) -> None:
        self.registry = registry
        self.executor = executor
        self.provider = provider
        self.step_budget = step_budget

    def start(self, *, ctx: ExecutionContext, system_prompt: str, transcript: list[Turn]) -> TurnRun:
        return TurnRun(
            controller=self,
            ctx=ctx,
            system_prompt=system_prompt,
            transcript=list(transcript),
            budget=StepBudget(self.step_budget),
        )

    def _drive(self, run: TurnRun) -> Iterator[StreamEvent]:
        turn = run.turn
        known_call_ids = {call.tool_call_id for prior in run.transcript for call in prior.tool_calls}
        tools = self.registry.schemas()

        while run.budget.consume():
            messages = to_model_messages([*run.transcript, turn])
            text_chunks: list[str] = []
            requests: list[ToolCallRequest] = []
            for event in self.provider.stream_step(
                system_prompt=run.system_prompt,
                messages=messages,
                tools=tools,
            ):
                if isinstance(event, TextDelta):
                    text_chunks.append(event.delta)
                    yield StreamEvent("token", {"delta": event.delta})
                elif isinstance(event, ToolCallRequest):
                    requests.append(event)

            if text_chunks:
                turn.parts.append(TextPart("".join(text_chunks)))

            step_calls: list[ToolCallPart] = []
            for request in requests:
                call_id = request.tool_call_id
                if not call_id or call_id in known_call_ids:
                    call_id = new_id("call")
                known_call_ids.add(call_id)
                tool = self.registry.get(request.tool_name)
                part = ToolCallPart(
                    tool_call_id=call_id,
                    tool_name=request.tool_name,
                    input=request.input,
                    mode=tool.mode if tool else "autonomous",
                )
                turn.parts.append(part)
                step_calls.append(part)
                yield StreamEvent(
                    "tool_call",
                    {
                        "tool_call_id": part.tool_call_id,
                        "tool_name": part.tool_name,
                        "input": part.input,
                        "mode": part.mode,
                    },
                )

            resolved_any = False
            awaiting_input = False
            for part in step_calls:
                if part.mode == "interactive":
                    try:
                        self.executor.validate(part.tool_name, part.input)
                    except ToolInputInvalid as exc:
                        yield self._resolve(turn, part, {"error": exc.as_error()}, is_error=True)
                        resolved_any = True
                        continue
                    awaiting_input = True
                    continue

                result = self.executor.execute(replace(run.ctx, tool_call_id=part.tool_call_id), part.tool_name, part.input)
                yield self._resolve(turn, part, result.as_tool_output(), is_error=result.is_error)
                resolved_any = True

            if awaiting_input:
                run.finish_reason = "awaiting_input"
                break
            if not resolved_any:
                run.finish_reason = "completed"
                break
        else:
            run.finish_reason = "step_budget_exhausted"
            logger.info(
                "step_budget_exhausted",
                conversation_id=run.ctx.conversation_id,
                model_calls=run.budget.used,
            )

    @staticmethod
    def _resolve(turn: Turn, part: ToolCallPart, output: Any, *, is_error: bool) -> StreamEvent:
        part.resolve(output, is_error=is_error)
        turn.parts.append(
            ToolResultPart(tool_call_id=part.tool_call_id, tool_name=part.tool_name, output=output, is_error=is_error)
        )
        return StreamEvent(
            "tool_result",
            {
                "tool_call_id": part.tool_call_id,
                "tool_name": part.tool_name,
                "output": output,
                "is_error": is_error,
            },
        )
