"""Tests for JSON state storage and demo data."""

import json

from haven.demo import create_demo_data
from haven.models import ChatMessage, StatChange, TurnResult, User
from haven.state import AppendMessages, ApplyTurnResult, AppState, UpsertUser


def test_load_without_file_returns_empty_state(storage):
    state = storage.load()
    assert state == AppState()
    assert not storage.path.exists()


def test_round_trip_keeps_sessions(storage):
    state = create_demo_data(storage)
    state.dispatch(AppendMessages(
        user_id="admin", character_id="mira", messages=[ChatMessage(sender="user", text="Hi")],
    ))
    state.dispatch(ApplyTurnResult(
        user_id="admin",
        character_id="mira",
        result=TurnResult(
            response_text="ok",
            stat_changes=[StatChange(stat_id="Trust", value_change=3)],
            new_narrative_state={"weather": "storm"},
        ),
    ))
    storage.save(state)

    loaded = storage.load()
    session = loaded.session("admin", "mira")
    assert session.messages[0].text == "Hi"
    assert session.stats == {"Trust": 3}
    assert session.narrative_state == {"weather": "storm"}
    assert loaded.character("mira").stats[0].name == "Trust"


def test_saved_file_is_plain_json(storage):
    state = AppState()
    state.dispatch(UpsertUser(user=User(id="u1", username="rowan", name="Rowan")))
    storage.save(state)
    data = json.loads(storage.path.read_text())
    assert data["users"]["u1"]["name"] == "Rowan"
    assert not storage.path.with_suffix(".json.tmp").exists()


def test_demo_data(storage):
    create_demo_data(storage)
    state = storage.load()
    assert state.user("admin").role == "Admin"
    assert state.registry().find_for_model("echo").provider == "echo"
    assert state.registry().find_for_tool("character_summarization") is not None
    mira = state.character("mira")
    assert mira.model == "echo"
    assert mira.stat("Trust").initial_value == 0
