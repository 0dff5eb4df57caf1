from __future__ import annotations

import hashlib
import json
import os
import re
import uuid
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from carely_agent_core import (
    AgentExecutor,
    CarelyError,
    Conversation,
    ExecutionContext,
    FilePart,
    Forbidden,
    HookDecision,
    HookRunner,
    NotFound,
    PersistenceConflict,
    ToolExecutionResult,
    ToolRegistry,
    Turn,
    TurnController,
    UnresolvedToolCalls,
    build_skip_turn,
)
from carely_agent_core.controller import DEFAULT_STEP_BUDGET
from carely_agent_core.labeling import derive_label, first_human_text, needs_label
from carely_agent_core.prompts import build_system_prompt, load_base_system_prompt
from carely_agent_core.provider import build_provider_from_env
from carely_tools import CarelyToolset, register_tools
from memory import MemoryService, SQLiteMemoryDB
from observability.logging import get_logger, setup_logging

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            _load_local_env_file(candidate)


_bootstrap_local_env()
setup_logging(
    level=os.getenv("CARELY_LOG_LEVEL", "INFO"),
    format=os.getenv("CARELY_LOG_FORMAT", "json"),
)
logger = get_logger("carely.api")


class AttachmentPayload(BaseModel):
    url: str
    media_type: str = "application/octet-stream"
    filename: str | None = None


class ChatTurnRequest(BaseModel):
    id: str | None = None
    text: str = ""
    visible: bool = True
    attachments: list[AttachmentPayload] = Field(default_factory=list)


class ToolResultRequest(BaseModel):
    tool_call_id: str
    output: Any = None
    is_error: bool = False
    turn_id: str | None = None


class ConversationCreateRequest(BaseModel):
    id: str | None = None


class ProfilePayload(BaseModel):
    name: str | None = None
    email: str | None = None


class CarelyApp:
    def __init__(self) -> None:
        db_path = os.getenv(
            "CARELY_DB_PATH",
            str((Path(__file__).resolve().parent / "carely.sqlite")),
        )
        self.db = SQLiteMemoryDB(db_path)
        self.memory = MemoryService(self.db)
        self.registry = ToolRegistry()
        self.toolset = CarelyToolset(self.memory)
        register_tools(self.registry, self.toolset)

        self.hooks = HookRunner()
        self.hooks.add_before(self._before_tool_call)
        self.hooks.add_after(self._after_tool_call)
        self.executor = AgentExecutor(registry=self.registry, hooks=self.hooks)

        self.provider = build_provider_from_env()
        self.step_budget = int(os.getenv("CARELY_STEP_BUDGET", str(DEFAULT_STEP_BUDGET)))
        self.base_prompt = load_base_system_prompt()

    def turn_controller(self) -> TurnController:
        return TurnController(
            registry=self.registry,
            executor=self.executor,
            provider=self.provider,
            step_budget=self.step_budget,
        )

    def system_prompt_for(self, ctx: ExecutionContext, history_facts: list[str]) -> str:
        return build_system_prompt(
            self.base_prompt,
            user_id=ctx.user_id,
            conversation_id=ctx.conversation_id,
            patient_name=ctx.patient_name,
            patient_email=ctx.patient_email,
            history_facts=history_facts,
        )

    def label_conversation(self, conversation: Conversation, prior_turns: list[Turn], human_turn: Turn) -> str | None:
        if not needs_label(conversation.label, prior_turns):
            return conversation.label
        first_message = first_human_text([*prior_turns, human_turn])
        if not first_message:
            return None
        label = derive_label(self.provider, first_message)
        if not label:
            return None
        try:
            written = self.memory.transcripts.set_label(conversation.id, label)
        except Exception as exc:
            logger.warning("conversation_label_write_failed", conversation_id=conversation.id, error=str(exc))
            return None
        return label if written else None

    def _before_tool_call(self, ctx: ExecutionContext, tool, payload: dict[str, Any]) -> HookDecision:
        if tool.name == "addToHistory" and payload.get("userId") != ctx.user_id:
            return HookDecision(
                allowed=False,
                code="cross_user_block",
                message="Medical history can only be written for the current patient.",
            )
        return HookDecision(allowed=True)

    def _after_tool_call(
        self,
        ctx: ExecutionContext,
        tool,
        payload: dict[str, Any],
        result: ToolExecutionResult,
    ) -> None:
        self.memory.patients.append_tool_event(
            user_id=ctx.user_id,
            conversation_id=ctx.conversation_id,
            tool_call_id=ctx.tool_call_id,
            tool_name=tool.name,
            status=result.status,
            details={"errors": result.errors},
        )


container = CarelyApp()
app = FastAPI(title="Carely Backend")

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in allowed_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_TRUSTED_USER_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{1,63}$")


def _validated_trusted_user_id(x_user_id: str) -> str:
    candidate = x_user_id.strip()
    if not candidate:
        raise HTTPException(status_code=400, detail="Invalid X-User-Id")
    if not _TRUSTED_USER_ID_RE.fullmatch(candidate):
        raise HTTPException(status_code=400, detail="Invalid X-User-Id")
    return candidate


def get_user_id(auth_header: str | None) -> str:
    if not auth_header:
        if os.getenv("ALLOW_ANON", "false").lower() == "true":
            return "demo-user"
        raise HTTPException(status_code=401, detail="Missing Authorization")
    raw = auth_header.replace("Bearer", "", 1).strip()
    if not raw:
        if os.getenv("ALLOW_ANON", "false").lower() == "true":
            return "demo-user"
        raise HTTPException(status_code=401, detail="Missing Authorization")
    # Bearer tokens are opaque identifiers; unsigned claims are never trusted.
    if len(raw) > 96:
        return f"token_{hashlib.sha256(raw.encode('utf-8')).hexdigest()[:24]}"
    return raw


def resolve_user_id(authorization: str | None, x_user_id: str | None) -> str:
    if x_user_id is not None:
        return _validated_trusted_user_id(x_user_id)
    return get_user_id(authorization)


def _http_error(exc: CarelyError) -> HTTPException:
    if isinstance(exc, Forbidden):
        status_code = 403
    elif isinstance(exc, NotFound):
        status_code = 404
    elif isinstance(exc, (PersistenceConflict, UnresolvedToolCalls)):
        status_code = 409
    else:
        status_code = 400
    logger.info("request_rejected", code=exc.code, status_code=status_code)
    return HTTPException(status_code=status_code, detail={"code": exc.code, "message": exc.message})


def _emit_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


@app.post("/conversations")
def create_conversation(
    payload: ConversationCreateRequest | None = None,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    try:
        conversation = container.memory.transcripts.create_conversation(
            principal_id=user_id,
            conversation_id=payload.id if payload else None,
        )
    except CarelyError as exc:
        raise _http_error(exc) from exc
    return conversation.to_dict()


@app.get("/conversations")
def list_conversations(authorization: str | None = Header(default=None), x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(authorization, x_user_id)
    conversations = container.memory.transcripts.list_conversations(user_id)
    return {"conversations": [conversation.to_dict() for conversation in conversations]}


@app.get("/conversations/{conversation_id}")
def get_conversation(
    conversation_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    try:
        return container.memory.conversation_snapshot(conversation_id, user_id)
    except CarelyError as exc:
        raise _http_error(exc) from exc


@app.post("/conversations/{conversation_id}/tool-results")
def record_tool_result(
    conversation_id: str,
    payload: ToolResultRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    try:
        result = container.memory.transcripts.record_tool_result(
            conversation_id=conversation_id,
            principal_id=user_id,
            tool_call_id=payload.tool_call_id,
            output=payload.output,
            is_error=payload.is_error,
            turn_id=payload.turn_id,
        )
    except CarelyError as exc:
        raise _http_error(exc) from exc
    return {
        "status": "replayed" if result["replayed"] else "recorded",
        "tool_call_id": payload.tool_call_id,
        "output": result["output"],
        "turn": result["turn"].to_dict() if result["turn"] else None,
    }


@app.post("/conversations/{conversation_id}/chat/stream")
def chat_stream(
    conversation_id: str,
    payload: ChatTurnRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    if not payload.text.strip() and not payload.attachments:
        raise HTTPException(status_code=400, detail="Message text or an attachment is required.")

    transcripts = container.memory.transcripts
    request_id = uuid.uuid4().hex
    try:
        conversation = transcripts.get_conversation(conversation_id, user_id)
        head_seq = transcripts.claim_turn(conversation_id, user_id, request_id)
    except CarelyError as exc:
        raise _http_error(exc) from exc

    try:
        transcript = transcripts.read(conversation_id, user_id)
        pending = transcripts.pending_interactive_calls(conversation_id, user_id)
        if payload.id and any(turn.id == payload.id for turn in transcript):
            raise HTTPException(status_code=409, detail="Turn already submitted.")

        skip_turn = build_skip_turn(container.registry, pending)
        human_turn = Turn.human(
            payload.text.strip(),
            attachments=[
                FilePart(url=item.url, media_type=item.media_type, filename=item.filename)
                for item in payload.attachments
            ],
            visible=payload.visible,
            turn_id=payload.id,
        )
        patient = container.memory.patient_context(user_id)
        ctx = ExecutionContext(
            user_id=user_id,
            conversation_id=conversation_id,
            request_id=request_id,
            patient_name=patient["name"],
            patient_email=patient["email"],
        )
        prior_turns = [*transcript, skip_turn] if skip_turn else list(transcript)
        run = container.turn_controller().start(
            ctx=ctx,
            system_prompt=container.system_prompt_for(ctx, patient["history_facts"]),
            transcript=[*prior_turns, human_turn],
        )
    except Exception as exc:
        transcripts.release_turn(conversation_id, request_id)
        if isinstance(exc, CarelyError):
            raise _http_error(exc) from exc
        raise

    def event_stream():
        try:
            for event in run:
                yield _emit_sse(event.event, event.data)
            new_turns = [turn for turn in (skip_turn, human_turn, run.turn) if turn is not None]
            transcripts.append(conversation_id, user_id, new_turns, expected_seq=head_seq)
        except CarelyError as exc:
            logger.warning(
                "chat_turn_failed",
                conversation_id=conversation_id,
                request_id=ctx.request_id,
                code=exc.code,
                error=exc.message,
            )
            yield _emit_sse("error", {"code": exc.code, "message": exc.message, "retryable": exc.retryable})
            return
        except Exception as exc:
            logger.error("chat_stream_error", conversation_id=conversation_id, request_id=ctx.request_id, error=str(exc))
            yield _emit_sse(
                "error",
                {"code": "internal_error", "message": "Chat pipeline error.", "retryable": True},
            )
            return
        finally:
            transcripts.release_turn(conversation_id, request_id)

        label = container.label_conversation(conversation, transcript, human_turn)
        yield _emit_sse(
            "message",
            {
                "turn": run.turn.to_dict(),
                "finish_reason": run.finish_reason,
                "model_calls": run.model_calls,
                "label": label,
                "skipped_tool_call_ids": [result.tool_call_id for result in skip_turn.tool_results]
                if skip_turn
                else [],
            },
        )

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@app.get("/profile")
def get_profile(authorization: str | None = Header(default=None), x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(authorization, x_user_id)
    return container.memory.patients.get_profile(user_id)


@app.put("/profile")
def upsert_profile(
    payload: ProfilePayload,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    return container.memory.patients.upsert_profile(
        user_id=user_id,
        name=payload.name.strip() if payload.name is not None else None,
        email=payload.email.strip() if payload.email is not None else None,
    )


@app.get("/history")
def get_history(authorization: str | None = Header(default=None), x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(authorization, x_user_id)
    return {"facts": container.memory.patients.list_facts(user_id)}


@app.post("/outbox/dispatch")
def dispatch_outbox(authorization: str | None = Header(default=None), x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(authorization, x_user_id)
    results = container.toolset.mailer.dispatch_due(user_id)
    return {
        "dispatched": [
            {"id": entry["id"], "status": entry["status"], "provider_ref": entry["provider_ref"]}
            for entry in results
        ]
    }
