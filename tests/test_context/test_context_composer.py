import json

from streamloop.context import ContextComposer, InMemoryContextStore
from streamloop.state import AgentIterationState
from streamloop.token_budget import ARTIFACTS, CONVERSATION, SYSTEM, TEMPLATES
from streamloop.turns import user_text_turn


def test_store_groups_items_by_bucket():
    store = InMemoryContextStore()
    store.put("a.py", "print(1)", bucket=ARTIFACTS, relevance=2)
    store.put("base.html", "<html>", bucket=TEMPLATES)

    assert [item.key for item in store.items(ARTIFACTS)] == ["a.py"]
    assert store.get("base.html") == "<html>"
    store.remove("base.html")
    assert store.get("base.html") is None
    assert len(store) == 1


def test_composer_packs_relevant_items_into_system_text():
    store = InMemoryContextStore()
    store.put("important.py", "x" * 40, relevance=5)
    store.put("huge.py", "y" * 4000, relevance=4)
    store.put("minor.py", "z" * 40, relevance=1)
    composer = ContextComposer(store=store, counter=len, profile_overrides={"default": {ARTIFACTS: 100}})
    state = AgentIterationState(history=[user_text_turn("hello")])

    composed = composer.compose(state, system_prompt="You are helpful.")

    assert composed.selected[ARTIFACTS] == ["important.py", "minor.py"]
    assert composed.system.startswith("You are helpful.")
    assert "## artifacts: important.py" in composed.system
    assert "huge.py" not in composed.system
    assert composed.messages == [{"role": "user", "content": [{"type": "text", "text": "hello"}]}]
    assert composed.allocator.used[SYSTEM] == len("You are helpful.")
    assert composed.allocator.used[CONVERSATION] == len(json.dumps(composed.messages, ensure_ascii=False))


def test_composer_uses_profile_for_operation():
    composer = ContextComposer()

    composed = composer.compose(AgentIterationState(), operation="analysis")

    assert composed.allocator.profile == "diagnostic"
    assert composed.system == ""


def test_oversized_history_is_still_sent_whole():
    composer = ContextComposer(counter=len, profile_overrides={"default": {CONVERSATION: 10}})
    state = AgentIterationState(history=[user_text_turn("a long message that will not fit")])

    composed = composer.compose(state)

    assert len(composed.messages) == 1
    assert composed.allocator.used[CONVERSATION] == 0
