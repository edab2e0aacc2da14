"""Pydantic request/response models for API endpoints."""

from typing import Any

from pydantic import BaseModel

from haven.models import CharacterMode, Connection, ProviderKind, Stat, UserRole


class CreateUser(BaseModel):
    id: str | None = None
    username: str
    name: str
    role: UserRole = "User"


class CreateCharacter(BaseModel):
    id: str | None = None
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
    stats: list[Stat] = []
    stats_visible: bool = False


class UpdateCharacter(BaseModel):
    name: str | None = None
    gender: str | None = None
    description: str | None = None
    personality: str | None = None
    story: str | None = None
    situation: str | None = None
    feeling: str | None = None
    appearance: str | None = None
    greeting: str | None = None
    mode: CharacterMode | None = None
    model: str | None = None
    stats: list[Stat] | None = None
    stats_visible: bool | None = None


class CreateConnection(BaseModel):
    id: str | None = None
    name: str
    provider: ProviderKind
    api_key: str = ""
    base_url: str | None = None
    models: list[str] = []
    is_active: bool = True


class UpdateConnection(BaseModel):
    name: str | None = None
    api_key: str | None = None
    base_url: str | None = None
    models: list[str] | None = None
    is_active: bool | None = None


class ConnectionView(BaseModel):
    """A connection as the API shows it: the key itself never leaves the server."""

    id: str
    name: str
    provider: ProviderKind
    has_api_key: bool
    base_url: str | None
    models: list[str]
    is_active: bool

    @classmethod
    def of(cls, connection: Connection) -> "ConnectionView":
        return cls(
            **connection.model_dump(exclude={"api_key"}),
            has_api_key=bool(connection.api_key),
        )


class AssignToolBody(BaseModel):
    connection_id: str | None = None


class ChatBody(BaseModel):
    message: str


class RewindBody(BaseModel):
    message_id: str
    inclusive: bool = False


class ModerateTextBody(BaseModel):
    text: str


class ModerateImageBody(BaseModel):
    data_base64: str
    mime_type: str = "image/png"


class SpeechBody(BaseModel):
    text: str
    voice: str | None = None


class CharacterImageBody(BaseModel):
    prompt: str = ""


def updates(body: BaseModel) -> dict[str, Any]:
    """Fields the client actually sent."""
    return body.model_dump(exclude_unset=True, exclude_none=True)
