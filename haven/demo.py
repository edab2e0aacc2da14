"""Create demo data for development/testing."""

from haven.models import Character, Connection, Stat, StatRule, User
from haven.state import (
    AppState,
    AssignTool,
    UpsertCharacter,
    UpsertConnection,
    UpsertUser,
)
from haven.storage import Storage

DEMO_USER = User(id="admin", username="admin", name="Rowan", role="Admin")

DEMO_CONNECTION = Connection(
    id="echo-local",
    name="Local Echo",
    provider="echo",
    models=["echo"],
)

DEMO_CHARACTER = Character(
    id="mira",
    creator_id="admin",
    name="Mira",
    gender="Female",
    description="A lighthouse keeper on a windswept island who trades stories for news.",
    personality="Dry humour, patient, slow to trust strangers.",
    story="{{char}} took over the lighthouse after her uncle vanished at sea.",
    situation="A storm has stranded {{user}} on the island for the night.",
    feeling="Wary but curious.",
    appearance="Oilskin coat, salt-white braid, a brass lantern always at hand.",
    greeting="*{{char}} lifts the lantern.* You're soaked through, {{user}}. Come inside.",
    model="echo",
    stats_visible=True,
    stats=[
        Stat(
            id="Trust",
            name="Trust",
            min=0,
            max=100,
            initial_value=0,
            behavior_description="Low trust keeps answers short; high trust opens up the uncle's story.",
            increase_rules=[StatRule(description="Helps keep the lamp lit", value=5)],
            decrease_rules=[StatRule(description="Lies about where they came from", value=10)],
        ),
    ],
)


def create_demo_data(storage: Storage) -> AppState:
    """Replace stored state with a fresh demo state and return it."""
    state = AppState()
    state.dispatch(UpsertUser(user=DEMO_USER))
    state.dispatch(UpsertConnection(connection=DEMO_CONNECTION))
    state.dispatch(UpsertCharacter(character=DEMO_CHARACTER))
    state.dispatch(AssignTool(role="character_summarization", connection_id=DEMO_CONNECTION.id))
    storage.save(state)
    return state
