from __future__ import annotations

from observability.logging import get_logger

from .models import Turn
from .prompts import LABEL_SYSTEM_PROMPT
from .provider import ModelProvider

logger = get_logger(__name__)

_MAX_LABEL_LENGTH = 60


def first_human_text(turns: list[Turn]) -> str | None:
    for turn in turns:
        if turn.role == "human" and turn.visible and turn.text.strip():
            return turn.text.strip()
    return None


def needs_label(existing_label: str | None, prior_turns: list[Turn]) -> bool:
    if existing_label:
        return False
    return not any(turn.role == "assistant" for turn in prior_turns)


def derive_label(provider: ModelProvider, first_message: str) -> str | None:
    """Best-effort short label for a conversation; never raises."""
    try:
        raw = provider.complete(system_prompt=LABEL_SYSTEM_PROMPT, prompt=first_message[:2000])
    except Exception as exc:
        logger.warning("conversation_label_failed", error=str(exc))
        return None
    label = (raw or "").strip().strip('"').strip()
    if not label or label.upper() == "SKIP":
        return None
    return label[:_MAX_LABEL_LENGTH]
