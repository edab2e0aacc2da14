"""Core domain models.

Every pipeline stage, storage function and API endpoint operates on these
types. Pydantic is used for validation and serialisation at every data
boundary.

Wire names: the model backends exchange stat updates and moderation verdicts
in camelCase (`statId`, `valueChange`, `isViolation`, ...). Those models
accept both spellings and dump by alias where they leave the process.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

CharacterMode = Literal["restricted", "unrestricted"]

Sender = Literal["user", "bot"]

ProviderKind = Literal["gemini", "openai", "anthropic", "other", "echo"]

UserRole = Literal["User", "Moderator", "Assistant Admin", "Admin"]

ToolRole = Literal[
    "character_summarization", "text_moderation", "image_moderation", "image_generation"
]

TOOL_ROLES: tuple[str, ...] = (
    "character_summarization",
    "text_moderation",
    "image_moderation",
    "image_generation",
)

ContextField = Literal[
    "gender",
    "description",
    "personality",
    "story",
    "situation",
    "feeling",
    "appearance",
    "greeting",
]

# Opaque model memory. Replaced wholesale, never merged or validated.
NarrativeState = dict[str, Any]


def new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Moderation
# ---------------------------------------------------------------------------

class ModerationResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_violation: bool = Field(alias="isViolation")
    category: str | None = None
    confidence: float = 0.0
    flagged_text: str | None = Field(default=None, alias="flaggedText")
    explanation: str | None = None


# ---------------------------------------------------------------------------
# Characters
# ---------------------------------------------------------------------------

class StatRule(BaseModel):
    """One weighted hint for the model. Never enforced mechanically."""

    id: str = Field(default_factory=new_id)
    description: str
    value: float


class Stat(BaseModel):
    id: str
    name: str
    min: float = 0
    max: float = 100
    initial_value: float = 0
    behavior_description: str = ""
    increase_rules: list[StatRule] = Field(default_factory=list)
    decrease_rules: list[StatRule] = Field(default_factory=list)

    def clamp(self, value: float) -> float:
        return max(self.min, min(self.max, value))


class CharacterSummary(BaseModel):
    """Shorter variants of the persona fields, generated once per character."""

    description: str = ""
    personality: str = ""
    story: str = ""
    situation: str = ""
    feeling: str = ""
    appearance: str = ""
    greeting: str = ""


class Character(BaseModel):
    id: str = Field(default_factory=new_id)
    creator_id: str = ""
    name: str
    gender: str = ""
    description: str = ""
    personality: str = ""
    story: str = ""
    situation: str = ""
    feeling: str = ""
    appearance: str = ""
    greeting: str = ""
    mode: CharacterMode = "restricted"
    model: str = ""
    stats: list[Stat] = Field(default_factory=list)
    stats_visible: bool = False
    summary: CharacterSummary | None = None
    moderation: ModerationResult | None = None  # verdict from the last save scan

    def stat(self, stat_id: str) -> Stat | None:
        for stat in self.stats:
            if stat.id == stat_id:
                return stat
        return None

    def initial_stats(self) -> dict[str, float]:
        return {s.id: s.initial_value for s in self.stats}


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

class User(BaseModel):
    id: str = Field(default_factory=new_id)
    username: str
    name: str  # display name, substituted for {{user}}
    role: UserRole = "User"


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

class ChatMessage(BaseModel):
    id: str = Field(default_factory=new_id)
    sender: Sender
    text: str
    timestamp: datetime = Field(default_factory=_now)
    stats_snapshot: str | None = None  # "Trust=12, Fear=3" under bot replies


class ChatSettings(BaseModel):
    model: str = ""  # empty → the character's own model
    streaming: bool = True
    kid_mode: bool = False
    tts_voice: str = "Kore"


class ChatSession(BaseModel):
    """Everything stored per (user, character) pair."""

    messages: list[ChatMessage] = Field(default_factory=list)
    stats: dict[str, float] = Field(default_factory=dict)
    narrative_state: NarrativeState = Field(default_factory=dict)
    settings: ChatSettings = Field(default_factory=ChatSettings)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

DEFAULT_INCLUDED_FIELDS: list[str] = [
    "gender",
    "description",
    "personality",
    "story",
    "situation",
    "feeling",
    "appearance",
]


class AIContextSettings(BaseModel):
    included_fields: list[ContextField] = Field(
        default_factory=lambda: list(DEFAULT_INCLUDED_FIELDS)
    )
    history_length: int = Field(default=20, ge=0)
    max_output_tokens: int = Field(default=2048, gt=0)
    temperature: float = 0.8


class GlobalSettings(BaseModel):
    """Admin-editable rule sets. Empty prompts fall back to built-in defaults."""

    restricted_prompt: str = ""
    unrestricted_prompt: str = ""
    kid_mode_prompt: str = ""
    enable_ai_moderation: bool = False


class PromptOverrides(BaseModel):
    """One-off replacements used by the admin simulator."""

    restricted_prompt: str = ""
    unrestricted_prompt: str = ""
    kid_mode_prompt: str = ""


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------

class Connection(BaseModel):
    """Credentials + endpoint + model allowlist for one AI backend."""

    id: str = Field(default_factory=new_id)
    name: str
    provider: ProviderKind
    api_key: str = ""
    base_url: str | None = None
    models: list[str] = Field(default_factory=list)
    is_active: bool = True


# ---------------------------------------------------------------------------
# Turn results
# ---------------------------------------------------------------------------

class StatChange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    stat_id: str = Field(alias="statId")
    value_change: float = Field(alias="valueChange")
    reason: str | None = None


class TurnResult(BaseModel):
    response_text: str
    stat_changes: list[StatChange] = Field(default_factory=list)
    new_narrative_state: NarrativeState | None = None

