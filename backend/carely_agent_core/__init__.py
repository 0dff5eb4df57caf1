from .controller import DEFAULT_STEP_BUDGET, StreamEvent, TurnController, TurnRun
from .errors import (
    CarelyError,
    DuplicateResolutionAttempt,
    Forbidden,
    ModelInvocationFailed,
    NotFound,
    PersistenceConflict,
    ToolExecutionFailed,
    ToolInputInvalid,
    TransportError,
    TurnInFlight,
    UnresolvedToolCalls,
)
from .executor import AgentExecutor
from .hooks import HookDecision, HookRunner
from .interruption import build_skip_turn
from .models import (
    Conversation,
    ExecutionContext,
    FilePart,
    StepBudget,
    TextPart,
    ToolCallPart,
    ToolExecutionResult,
    ToolResultPart,
    Turn,
)
from .registry import ToolDefinition, ToolRegistry

__all__ = [
    "DEFAULT_STEP_BUDGET",
    "AgentExecutor",
    "CarelyError",
    "Conversation",
    "DuplicateResolutionAttempt",
    "ExecutionContext",
    "FilePart",
    "Forbidden",
    "HookDecision",
    "HookRunner",
    "ModelInvocationFailed",
    "NotFound",
    "PersistenceConflict",
    "StepBudget",
    "StreamEvent",
    "TextPart",
    "ToolCallPart",
    "ToolDefinition",
    "ToolExecutionFailed",
    "ToolExecutionResult",
    "ToolInputInvalid",
    "ToolRegistry",
    "ToolResultPart",
    "TransportError",
    "Turn",
    "TurnController",
    "TurnInFlight",
    "TurnRun",
    "UnresolvedToolCalls",
    "build_skip_turn",
]
