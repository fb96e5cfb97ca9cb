from src.scriptgen.core.state_machine import EventType, ScriptGenerationMachine
from src.scriptgen.services import interaction_log
from src.scriptgen.services.interaction_log import (
    InteractionLogListener,
    list_recent_interactions,
    log_interaction,
)


def test_buffer_is_bounded():
    for i in range(interaction_log._MAX_BUFFER + 25):
        log_interaction("ix", "client", f"step {i}")
    entries = list_recent_interactions(1000)
    assert len(entries) == interaction_log._MAX_BUFFER
    assert entries[-1].message == f"step {interaction_log._MAX_BUFFER + 24}"


def test_filter_and_limit():
    log_interaction("a", "client", "one")
    log_interaction("b", "client", "two")
    log_interaction("a", "serverRoute", "three", {"n": 3})
    assert [e.message for e in list_recent_interactions(interaction_id="a")] == ["one", "three"]
    assert [e.message for e in list_recent_interactions(1)] == ["three"]
    assert list_recent_interactions(0) == []
    assert list_recent_interactions(interaction_id="a")[-1].data == {"n": 3}


def test_missing_interaction_id_is_unknown():
    log_interaction(None, "client", "orphan")
    assert list_recent_interactions(1)[0].interaction_id == "unknown"


def test_listener_mirrors_transitions():
    machine = ScriptGenerationMachine(listeners=[InteractionLogListener()])
    machine.send(EventType.SET_PROMPT, prompt="x")
    machine.send(EventType.GENERATE_DRAFT, timestamp="ts-1")
    machine.send(EventType.START_STREAMING_DRAFT)
    machine.send(EventType.UPDATE_EDITABLE_SCRIPT, delta="hello")

    entries = list_recent_interactions(interaction_id="ts-1")
    assert entries[0].message == "Transition idle -> thinkingDraft"
    assert entries[0].data["event"] == "GENERATE_DRAFT"
    assert entries[-1].data["delta_length"] == 5
    assert all(e.stage == "stateMachine" for e in entries)
