"""Application state and the commands that mutate it.

AppState is an explicit object handed to every request handler; nothing
reads it from an ambient context. All mutations go through
AppState.dispatch(command) so every change is a named, serialisable record.

Sessions are keyed sessions[user_id][character_id]. Snapshots (stats,
narrative state) are replaced wholesale: concurrent turns for the same pair
are last-writer-wins.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field

from haven.connections import ConnectionRegistry
from haven.models import (
    AIContextSettings,
    Character,
    CharacterSummary,
    ChatMessage,
    ChatSession,
    ChatSettings,
    Connection,
    GlobalSettings,
    TurnResult,
    User,
)
from haven.prompts import format_number

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

class UpsertUser(BaseModel):
    user: User


class UpsertCharacter(BaseModel):
    character: Character


class DeleteCharacter(BaseModel):
    character_id: str


class SetCharacterSummary(BaseModel):
    character_id: str
    summary: CharacterSummary | None


class UpsertConnection(BaseModel):
    connection: Connection


class DeleteConnection(BaseModel):
    connection_id: str


class AssignTool(BaseModel):
    role: str
    connection_id: str | None


class UpdateSettings(BaseModel):
    fields: dict[str, Any]


class UpdateContextSettings(BaseModel):
    fields: dict[str, Any]


class UpdateChatSettings(BaseModel):
    user_id: str
    character_id: str
    fields: dict[str, Any]


class AppendMessages(BaseModel):
    user_id: str
    character_id: str
    messages: list[ChatMessage]


class TruncateHistory(BaseModel):
    """Drop every message after `message_id` (kept when `inclusive` is False)."""

    user_id: str
    character_id: str
    message_id: str
    inclusive: bool = False


class ResetChat(BaseModel):
    user_id: str
    character_id: str


class ApplyTurnResult(BaseModel):
    user_id: str
    character_id: str
    result: TurnResult


Command = (
    UpsertUser | UpsertCharacter | DeleteCharacter | SetCharacterSummary
    | UpsertConnection | DeleteConnection | AssignTool
    | UpdateSettings | UpdateContextSettings | UpdateChatSettings
    | AppendMessages | TruncateHistory | ResetChat | ApplyTurnResult
)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def apply_stat_changes(
    character: Character, stats: dict[str, float], result: TurnResult
) -> dict[str, float]:
    """Return a new snapshot: each change added to the current value, then clamped.

    Unknown stat ids are ignored.
    """
    updated = dict(stats)
    for change in result.stat_changes:
        stat = character.stat(change.stat_id)
        if stat is None:
            logger.warning("Ignoring change for unknown stat %r on %s", change.stat_id, character.id)
            continue
        current = updated.get(stat.id, stat.initial_value)
        updated[stat.id] = stat.clamp(current + change.value_change)
    return updated


def stats_snapshot_text(character: Character, stats: dict[str, float] | None) -> str:
    """Render visible stats as "Trust=12, Fear=3"; empty when hidden."""
    if not character.stats_visible or not stats or not character.stats:
        return ""
    return ", ".join(
        f"{stat.name}={format_number(stats.get(stat.id, stat.initial_value))}"
        for stat in character.stats
    )


# ---------------------------------------------------------------------------
# AppState
# ---------------------------------------------------------------------------

class AppState(BaseModel):
    users: dict[str, User] = Field(default_factory=dict)
    characters: dict[str, Character] = Field(default_factory=dict)
    connections: list[Connection] = Field(default_factory=list)
    tool_connections: dict[str, str | None] = Field(default_factory=dict)
    settings: GlobalSettings = Field(default_factory=GlobalSettings)
    context: AIContextSettings = Field(default_factory=AIContextSettings)
    sessions: dict[str, dict[str, ChatSession]] = Field(default_factory=dict)

    # ── Lookups ──────────────────────────────────────────

    def user(self, user_id: str) -> User:
        try:
            return self.users[user_id]
        except KeyError:
            raise KeyError(f"Unknown user: {user_id}") from None

    def character(self, character_id: str) -> Character:
        try:
            return self.characters[character_id]
        except KeyError:
            raise KeyError(f"Unknown character: {character_id}") from None

    def connection(self, connection_id: str) -> Connection:
        for conn in self.connections:
            if conn.id == connection_id:
                return conn
        raise KeyError(f"Unknown connection: {connection_id}")

    def registry(self) -> ConnectionRegistry:
        return ConnectionRegistry(self.connections, self.tool_connections)

    def session(self, user_id: str, character_id: str) -> ChatSession:
        """The stored session, or a fresh one with stats at their initial values.

        A fresh session is not stored until a command writes to it.
        """
        existing = self.sessions.get(user_id, {}).get(character_id)
        if existing is not None:
            return existing
        character = self.character(character_id)
        return ChatSession(stats=character.initial_stats())

    def _session_for_write(self, user_id: str, character_id: str) -> ChatSession:
        session = self.session(user_id, character_id)
        self.sessions.setdefault(user_id, {})[character_id] = session
        return session

    # ── Dispatch ─────────────────────────────────────────

    def dispatch(self, command: Command) -> None:
        logger.debug("dispatch %s", type(command).__name__)
        match command:
            case UpsertUser(user=user):
                self.users[user.id] = user

            case UpsertCharacter(character=character):
                self.characters[character.id] = character

            case DeleteCharacter(character_id=character_id):
                self.character(character_id)
                del self.characters[character_id]
                for per_user in self.sessions.values():
                    per_user.pop(character_id, None)

            case SetCharacterSummary(character_id=character_id, summary=summary):
                character = self.character(character_id)
                self.characters[character_id] = character.model_copy(update={"summary": summary})

            case UpsertConnection(connection=connection):
                for i, conn in enumerate(self.connections):
                    if conn.id == connection.id:
                        self.connections[i] = connection
                        break
                else:
                    self.connections.append(connection)

            case DeleteConnection(connection_id=connection_id):
                self.connection(connection_id)
                self.connections = [c for c in self.connections if c.id != connection_id]
                for role, assigned in self.tool_connections.items():
                    if assigned == connection_id:
                        self.tool_connections[role] = None

            case AssignTool(role=role, connection_id=connection_id):
                if connection_id is not None:
                    self.connection(connection_id)
                self.tool_connections[role] = connection_id

            case UpdateSettings(fields=fields):
                self.settings = GlobalSettings.model_validate(
                    {**self.settings.model_dump(), **fields}
                )

            case UpdateContextSettings(fields=fields):
                self.context = AIContextSettings.model_validate(
                    {**self.context.model_dump(), **fields}
                )

            case UpdateChatSettings(user_id=user_id, character_id=character_id, fields=fields):
                session = self._session_for_write(user_id, character_id)
                session.settings = ChatSettings.model_validate(
                    {**session.settings.model_dump(), **fields}
                )

            case AppendMessages(user_id=user_id, character_id=character_id, messages=messages):
                session = self._session_for_write(user_id, character_id)
                session.messages = [*session.messages, *messages]

            case TruncateHistory(
                user_id=user_id, character_id=character_id, message_id=message_id, inclusive=inclusive
            ):
                session = self._session_for_write(user_id, character_id)
                for i, msg in enumerate(session.messages):
                    if msg.id == message_id:
                        session.messages = session.messages[: i if inclusive else i + 1]
                        break
                else:
                    raise KeyError(f"Unknown message: {message_id}")

            case ResetChat(user_id=user_id, character_id=character_id):
                self.character(character_id)
                self.sessions.get(user_id, {}).pop(character_id, None)

            case ApplyTurnResult(user_id=user_id, character_id=character_id, result=result):
                character = self.character(character_id)
                session = self._session_for_write(user_id, character_id)
                session.stats = apply_stat_changes(character, session.stats, result)
                if result.new_narrative_state is not None:
                    session.narrative_state = result.new_narrative_state

            case _:
                raise TypeError(f"Unknown command: {type(command).__name__}")
