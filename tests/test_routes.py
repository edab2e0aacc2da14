"""API tests through FastAPI's TestClient with a fake model backend."""

import pytest
from fastapi.testclient import TestClient

from haven.app import create_app
from haven.llm import ChatRequest, LLMError
from haven.models import StatChange, TurnResult

HEADERS = {"X-User-Id": "u1"}


class FakeBackend:
    def __init__(self):
        self.supports_tools = True
        self.supports_speech = True
        self.supports_images = True
        self.media = b"\x00\x01"
        self.media_calls: list[dict] = []
        self.result = TurnResult(response_text="ok")
        self.fragments: list[str] = []
        self.text = ""
        self.error = None
        self.requests: list[ChatRequest] = []

    async def complete(self, request: ChatRequest) -> TurnResult:
        self.requests.append(request)
        if self.error:
            raise self.error
        if request.response_schema is not None:
            return TurnResult(response_text=self.text)
        return self.result

    async def stream(self, request: ChatRequest):
        self.requests.append(request)
        for fragment in self.fragments:
            yield fragment

    async def synthesize_speech(self, text, *, voice, model, deadline=None):
        self.media_calls.append({"text": text, "voice": voice, "model": model})
        if self.error:
            raise self.error
        return self.media

    async def generate_image(self, prompt, *, model, deadline=None):
        self.media_calls.append({"prompt": prompt, "model": model})
        if self.error:
            raise self.error
        return self.media


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def client(data_dir, backend) -> TestClient:
    app = create_app(data_dir, backends=lambda connection: backend)
    client = TestClient(app)
    client.post("/api/users", json={"id": "u1", "username": "rowan", "name": "Rowan", "role": "Admin"})
    client.post("/api/users", json={"id": "u2", "username": "guest", "name": "Guest"})
    client.post("/api/connections", headers=HEADERS, json={
        "id": "c1", "name": "Main", "provider": "gemini", "api_key": "secret-key", "models": ["m1"],
    })
    client.post("/api/characters", headers=HEADERS, json={
        "id": "mira",
        "name": "Mira",
        "model": "m1",
        "greeting": "Welcome, {{user}}.",
        "stats_visible": True,
        "stats": [{"id": "Trust", "name": "Trust", "min": 0, "max": 100, "initial_value": 0}],
    })
    return client


def assign(client, role, connection_id="c1"):
    resp = client.put(f"/api/tools/{role}", headers=HEADERS, json={"connection_id": connection_id})
    assert resp.status_code == 200


# ── Health / settings ────────────────────────────────────────


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}


def test_settings_patch_and_get(client):
    resp = client.patch("/api/settings", headers=HEADERS, json={"kid_mode_prompt": "Be gentle."})
    assert resp.status_code == 200
    assert client.get("/api/settings").json()["kid_mode_prompt"] == "Be gentle."


def test_context_settings_validation(client):
    resp = client.patch("/api/settings/context", headers=HEADERS, json={"history_length": 5})
    assert resp.json()["history_length"] == 5
    resp = client.patch("/api/settings/context", headers=HEADERS, json={"history_length": -1})
    assert resp.status_code == 422


# ── Admin checks ─────────────────────────────────────────────


@pytest.mark.parametrize("method, path, body", [
    ("get", "/api/connections", None),
    ("post", "/api/connections", {"name": "X", "provider": "echo"}),
    ("patch", "/api/connections/c1", {"name": "Renamed"}),
    ("delete", "/api/connections/c1", None),
    ("put", "/api/tools/text_moderation", {"connection_id": "c1"}),
    ("patch", "/api/settings", {"enable_ai_moderation": True}),
    ("patch", "/api/settings/context", {"history_length": 1}),
])
def test_admin_only_routes(client, method, path, body):
    kwargs = {"json": body} if body is not None else {}
    resp = client.request(method, path, headers={"X-User-Id": "u2"}, **kwargs)
    assert resp.status_code == 403
    assert client.request(method, path, **kwargs).status_code == 422  # no X-User-Id at all
    assert client.get("/api/connections", headers=HEADERS).json()["connections"][0]["name"] == "Main"


def test_elevated_role_needs_admin(client):
    body = {"id": "u3", "username": "eve", "name": "Eve", "role": "Admin"}
    assert client.post("/api/users", json=body).status_code == 403
    assert client.post("/api/users", headers={"X-User-Id": "u2"}, json=body).status_code == 403
    assert client.post("/api/users", headers=HEADERS, json=body).status_code == 201


# ── Users / connections / characters ─────────────────────────


def test_duplicate_ids_conflict(client):
    assert client.post("/api/users", json={"id": "u1", "username": "x", "name": "X"}).status_code == 409
    assert client.post(
        "/api/connections", headers=HEADERS, json={"id": "c1", "name": "Dup", "provider": "echo"}
    ).status_code == 409
    assert client.post("/api/characters", headers=HEADERS, json={"id": "mira", "name": "M"}).status_code == 409


def test_character_crud(client):
    created = client.get("/api/characters/mira").json()
    assert created["creator_id"] == "u1"
    assert created["moderation"] is None

    resp = client.patch("/api/characters/mira", json={"personality": "Wry."})
    assert resp.json()["personality"] == "Wry."
    assert resp.json()["name"] == "Mira"

    assert client.delete("/api/characters/mira").status_code == 200
    assert client.get("/api/characters/mira").status_code == 404


def test_unknown_user_header(client):
    resp = client.get("/api/chats/mira", headers={"X-User-Id": "ghost"})
    assert resp.status_code == 404


def test_connection_update_and_tools(client):
    resp = client.patch("/api/connections/c1", headers=HEADERS, json={"is_active": False})
    assert resp.json()["is_active"] is False

    assign(client, "text_moderation")
    resp = client.put("/api/tools/unknown_role", headers=HEADERS, json={"connection_id": "c1"})
    assert resp.status_code == 404
    resp = client.put("/api/tools/text_moderation", headers=HEADERS, json={"connection_id": "nope"})
    assert resp.status_code == 404

    client.delete("/api/connections/c1", headers=HEADERS)
    assert client.get("/api/connections", headers=HEADERS).json()["tools"]["text_moderation"] is None


def test_connection_api_key_is_never_returned(client):
    listing = client.get("/api/connections", headers=HEADERS)
    assert "secret-key" not in listing.text
    conn = listing.json()["connections"][0]
    assert "api_key" not in conn
    assert conn["has_api_key"] is True

    resp = client.patch("/api/connections/c1", headers=HEADERS, json={"api_key": "rotated"})
    assert "rotated" not in resp.text
    assert resp.json()["has_api_key"] is True


def test_connection_update_validates_and_clears_base_url(client):
    resp = client.patch("/api/connections/c1", headers=HEADERS, json={"base_url": "http://llm.local/v1"})
    assert resp.json()["base_url"] == "http://llm.local/v1"

    resp = client.patch("/api/connections/c1", headers=HEADERS, json={"base_url": None, "name": None})
    assert resp.status_code == 200
    assert resp.json()["base_url"] is None
    assert resp.json()["name"] == "Main"

    resp = client.patch("/api/connections/c1", headers=HEADERS, json={"models": "m1"})
    assert resp.status_code == 422
    assert client.get("/api/connections", headers=HEADERS).json()["connections"][0]["models"] == ["m1"]


# ── Chat ─────────────────────────────────────────────────────


def test_new_chat_shows_greeting(client):
    session = client.get("/api/chats/mira", headers=HEADERS).json()
    assert [m["text"] for m in session["messages"]] == ["Welcome, Rowan."]
    assert session["stats"] == {"Trust": 0}


def test_send_message_applies_stats_and_persists(client, backend, data_dir):
    backend.result = TurnResult(
        response_text="Hello!", stat_changes=[StatChange(stat_id="Trust", value_change=1)],
    )
    resp = client.post("/api/chats/mira/messages", headers=HEADERS, json={"message": "Hi"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["reply"]["text"] == "Hello!"
    assert body["reply"]["stats_snapshot"] == "Trust=1"
    assert body["session"]["stats"] == {"Trust": 1}
    assert "Trust: 0 (Min: 0, Max: 100)" in backend.requests[0].system_instruction

    reloaded = TestClient(create_app(data_dir, backends=lambda connection: backend))
    session = reloaded.get("/api/chats/mira", headers=HEADERS).json()
    assert [m["sender"] for m in session["messages"]] == ["bot", "user", "bot"]


def test_stream_plain_backend(client, backend):
    backend.supports_tools = False
    client.patch("/api/characters/mira", json={"stats": []})
    backend.fragments = ["Hel", "lo", " there"]
    resp = client.post("/api/chats/mira/stream", headers=HEADERS, json={"message": "Hi"})
    assert resp.status_code == 200
    assert resp.text == "Hello there"
    messages = client.get("/api/chats/mira", headers=HEADERS).json()["messages"]
    assert messages[-1]["text"] == "Hello there"


def test_chat_error_becomes_reply(client, backend):
    backend.error = LLMError("Cannot connect to Gemini")
    resp = client.post("/api/chats/mira/messages", headers=HEADERS, json={"message": "Hi"})
    assert resp.json()["reply"]["text"] == "Error responding: Cannot connect to Gemini"


def test_rewind_and_reset(client):
    client.post("/api/chats/mira/messages", headers=HEADERS, json={"message": "Hi"})
    messages = client.get("/api/chats/mira", headers=HEADERS).json()["messages"]
    user_msg = messages[1]["id"]

    resp = client.post("/api/chats/mira/rewind", headers=HEADERS, json={"message_id": user_msg})
    assert [m["text"] for m in resp.json()["messages"]] == ["Welcome, Rowan.", "Hi"]

    resp = client.post("/api/chats/mira/rewind", headers=HEADERS, json={"message_id": "missing"})
    assert resp.status_code == 404

    resp = client.delete("/api/chats/mira", headers=HEADERS)
    assert [m["text"] for m in resp.json()["messages"]] == ["Welcome, Rowan."]


def test_chat_settings(client):
    resp = client.patch("/api/chats/mira/settings", headers=HEADERS, json={"kid_mode": True})
    assert resp.json()["kid_mode"] is True
    assert resp.json()["streaming"] is True


# ── Summaries / moderation / simulation ──────────────────────


def test_summarize_without_tool_connection(client):
    assert client.post("/api/characters/mira/summarize").status_code == 400


def test_summarize_stores_summary(client, backend):
    assign(client, "character_summarization")
    backend.text = '{"description": "Keeper of the light."}'
    resp = client.post("/api/characters/mira/summarize")
    assert resp.status_code == 200
    assert client.get("/api/characters/mira").json()["summary"]["description"] == "Keeper of the light."


def test_summarize_rate_limited(client, backend):
    assign(client, "character_summarization")
    backend.error = LLMError("Gemini API error: 429 RESOURCE_EXHAUSTED")
    assert client.post("/api/characters/mira/summarize").status_code == 429


def test_moderation_off_by_default(client, backend):
    resp = client.post("/api/moderation/text", headers=HEADERS, json={"text": "hello"})
    assert resp.json() == {"flagged": False, "result": None}
    assert backend.requests == []


def test_moderation_flags_text(client, backend):
    client.patch("/api/settings", headers=HEADERS, json={"enable_ai_moderation": True})
    assign(client, "text_moderation")
    backend.text = '{"isViolation": true, "category": "bullying", "confidence": 0.9}'
    resp = client.post("/api/moderation/text", headers=HEADERS, json={"text": "you are worthless"})
    body = resp.json()
    assert body["flagged"] is True
    assert body["result"]["isViolation"] is True
    assert body["result"]["category"] == "bullying"
    assert backend.requests[0].model == "m1"


def test_simulate(client, backend):
    backend.result = TurnResult(response_text="Simulated.")
    resp = client.post("/api/admin/simulate", headers=HEADERS, json={
        "character_id": "mira", "user_id": "u1", "user_input": "Hey",
    })
    assert resp.status_code == 200
    body = resp.json()
    assert body["result"]["response_text"] == "Simulated."
    assert "Name: Mira" in body["system_instruction"]
    assert client.get("/api/chats/mira", headers=HEADERS).json()["stats"] == {"Trust": 0}


def test_simulate_requires_admin(client):
    resp = client.post("/api/admin/simulate", headers={"X-User-Id": "u2"}, json={
        "character_id": "mira", "user_id": "u2",
    })
    assert resp.status_code == 403


def test_image_moderation(client, backend):
    body = {"data_base64": "iVBORw0KGgo=", "mime_type": "image/png"}
    assert client.post("/api/moderation/image", headers=HEADERS, json=body).json()["flagged"] is False

    client.patch("/api/settings", headers=HEADERS, json={"enable_ai_moderation": True})
    assign(client, "image_moderation")
    backend.text = '{"isViolation": true, "category": "violence", "confidence": 0.7}'
    resp = client.post("/api/moderation/image", headers=HEADERS, json=body)
    assert resp.json()["result"]["category"] == "violence"
    assert backend.requests[-1].image.data == b"\x89PNG\r\n\x1a\n"

    bad = client.post("/api/moderation/image", headers=HEADERS, json={"data_base64": "not base64!"})
    assert bad.status_code == 422


def test_character_save_is_moderated(client, backend):
    client.patch("/api/settings", headers=HEADERS, json={"enable_ai_moderation": True})
    assign(client, "text_moderation")
    backend.text = '{"isViolation": true, "category": "racism", "confidence": 0.8}'

    resp = client.post("/api/characters", headers=HEADERS, json={"id": "vex", "name": "Vex", "story": "..."})
    assert resp.status_code == 201
    assert resp.json()["moderation"]["isViolation"] is True
    assert "Vex" in backend.requests[-1].messages[0].text

    backend.text = '{"isViolation": false}'
    resp = client.patch("/api/characters/vex", json={"story": "A quiet baker."})
    assert resp.json()["moderation"] is None
    assert client.get("/api/characters/vex").json()["moderation"] is None


def test_persona_edit_clears_summary(client, backend):
    assign(client, "character_summarization")
    backend.text = '{"description": "Keeper of the light."}'
    client.post("/api/characters/mira/summarize")

    client.patch("/api/characters/mira", json={"stats_visible": False, "personality": ""})
    assert client.get("/api/characters/mira").json()["summary"] is not None

    client.patch("/api/characters/mira", json={"description": "Lighthouse keeper, retired."})
    assert client.get("/api/characters/mira").json()["summary"] is None


# ── Speech / portraits ───────────────────────────────────────


def test_speech_uses_chat_voice(client, backend):
    client.patch("/api/chats/mira/settings", headers=HEADERS, json={"tts_voice": "Puck"})
    resp = client.post("/api/chats/mira/speech", headers=HEADERS, json={"text": "Hello there."})
    assert resp.status_code == 200
    assert resp.content == b"\x00\x01"
    assert resp.headers["content-type"].startswith("audio/L16")
    assert backend.media_calls == [
        {"text": "Hello there.", "voice": "Puck", "model": "gemini-2.5-flash-preview-tts"}
    ]


def test_speech_errors(client, backend):
    resp = client.post("/api/chats/mira/speech", headers=HEADERS, json={"text": "Hi", "voice": "Nobody"})
    assert resp.status_code == 400

    backend.supports_speech = False
    assert client.post("/api/chats/mira/speech", headers=HEADERS, json={"text": "Hi"}).status_code == 400

    backend.supports_speech = True
    backend.error = LLMError("Gemini timed out after 5s")
    assert client.post("/api/chats/mira/speech", headers=HEADERS, json={"text": "Hi"}).status_code == 502


def test_character_image(client, backend):
    assert client.post("/api/characters/mira/image", headers=HEADERS, json={}).status_code == 400

    client.patch("/api/connections/c1", headers=HEADERS, json={"models": ["m1", "imagen-4.0-generate-001"]})
    assign(client, "image_generation")
    client.patch("/api/characters/mira", json={"appearance": "Silver hair, oilskin coat."})
    resp = client.post("/api/characters/mira/image", headers=HEADERS, json={})
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/png"
    assert resp.content == b"\x00\x01"
    call = backend.media_calls[-1]
    assert call["model"] == "imagen-4.0-generate-001"
    assert "Silver hair, oilskin coat." in call["prompt"]

    backend.media = b""
    assert client.post("/api/characters/mira/image", headers=HEADERS, json={}).status_code == 502
