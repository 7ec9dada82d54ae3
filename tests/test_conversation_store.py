from __future__ import annotations

from taskpilot.ai.memory.conversation_store import InMemoryConversationStore


def test_append_and_load_messages() -> None:
    store = InMemoryConversationStore()

    store.append_messages("s1", [{"role": "user", "content": "hi"}])
    store.append_messages("s1", [{"role": "assistant", "content": "hello"}])
    store.append_messages("s1", [])

    assert [message["role"] for message in store.load_messages("s1")] == ["user", "assistant"]
    assert store.load_messages("other") == []


def test_loaded_messages_are_copies() -> None:
    store = InMemoryConversationStore(initial={"s1": [{"role": "user", "content": "hi", "toolCalls": []}]})

    loaded = store.load_messages("s1")
    loaded[0]["toolCalls"].append({"name": "x"})

    assert store.load_messages("s1")[0]["toolCalls"] == []


def test_state_round_trip() -> None:
    store = InMemoryConversationStore()
    state = {"currentPhase": "completed", "toolExecutionStack": []}

    store.save_state("s1", state)
    state["currentPhase"] = "mutated"

    assert store.load_state("s1") == {"currentPhase": "completed", "toolExecutionStack": []}
    assert store.load_state("s2") is None
    assert store.sessions() == ["s1"]
