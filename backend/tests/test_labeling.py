from __future__ import annotations

from carely_agent_core import Turn
from carely_agent_core.labeling import derive_label, first_human_text, needs_label
from conftest import ScriptedProvider


def test_label_is_trimmed_and_bounded():
    provider = ScriptedProvider(label='  "Persistent migraine with aura and light sensitivity lasting several days"  ')

    label = derive_label(provider, "I keep getting migraines")

    assert label.startswith("Persistent migraine")
    assert len(label) <= 60
    assert provider.label_prompts == ["I keep getting migraines"]


def test_skip_answer_yields_no_label():
    assert derive_label(ScriptedProvider(label="SKIP"), "hi") is None
    assert derive_label(ScriptedProvider(label="   "), "hi") is None


def test_provider_failure_yields_no_label():
    assert derive_label(ScriptedProvider(label=RuntimeError("label model down")), "hi") is None


def test_only_unlabelled_conversations_without_assistant_turns_need_a_label():
    assert needs_label(None, [])
    assert needs_label(None, [Turn.human("hello")])
    assert not needs_label("Cough", [])
    assert not needs_label(None, [Turn.human("hello"), Turn.assistant()])


def test_first_human_text_ignores_hidden_and_empty_turns():
    turns = [
        Turn.human("Here's my location.", visible=False),
        Turn.human("   "),
        Turn.human("  My ankle is swollen "),
        Turn.human("later message"),
    ]

    assert first_human_text(turns) == "My ankle is swollen"
    assert first_human_text([]) is None
