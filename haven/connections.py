"""Connection registry — routes a model name or a tool role to a backend.

Lookup rules:
  find_for_model(model): first *active* connection whose model allowlist
    contains the model name.
  find_for_tool(role): the connection assigned to the tool role, if it
    exists and is active.

backend_for(connection) picks the backend variant by provider kind:
  gemini                    → GeminiBackend (structured, tool capable)
  openai                    → OpenAICompatibleBackend, default base URL
  anthropic / other         → OpenAICompatibleBackend, base URL required
  echo                      → EchoBackend
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping

from haven.llm import (
    DEFAULT_OPENAI_BASE_URL,
    ChatBackend,
    ConfigurationError,
    EchoBackend,
    GeminiBackend,
    OpenAICompatibleBackend,
)
from haven.models import Connection

logger = logging.getLogger(__name__)

BackendFactory = Callable[[Connection], ChatBackend]


class ConnectionRegistry:
    def __init__(
        self,
        connections: list[Connection],
        tool_connections: Mapping[str, str | None] | None = None,
    ) -> None:
        self._connections = connections
        self._tools = dict(tool_connections or {})

    def get(self, connection_id: str) -> Connection | None:
        for conn in self._connections:
            if conn.id == connection_id:
                return conn
        return None

    def find_for_model(self, model: str) -> Connection | None:
        for conn in self._connections:
            if conn.is_active and model in conn.models:
                return conn
        return None

    def find_for_tool(self, role: str) -> Connection | None:
        conn_id = self._tools.get(role)
        if not conn_id:
            return None
        conn = self.get(conn_id)
        if conn is None or not conn.is_active:
            return None
        return conn

    def require_model(self, model: str) -> Connection:
        if not model:
            raise ConfigurationError("No model is selected for this chat. Pick one in the chat settings.")
        conn = self.find_for_model(model)
        if conn is None:
            raise ConfigurationError(f"No active connection found for model: {model}")
        return conn

    def require_tool(self, role: str) -> Connection:
        conn = self.find_for_tool(role)
        if conn is None:
            raise ConfigurationError(f"No active connection is assigned to the '{role}' tool.")
        return conn


def backend_for(connection: Connection) -> ChatBackend:
    """Build the backend variant for a connection's provider kind."""
    if connection.provider == "gemini":
        try:
            return GeminiBackend(api_key=connection.api_key)
        except ValueError as e:
            # genai.Client refuses to start without a key
            raise ConfigurationError(
                f"Connection '{connection.name}' has no usable API key: {e}"
            ) from e
    if connection.provider == "echo":
        return EchoBackend()

    base_url = connection.base_url
    if not base_url and connection.provider == "openai":
        base_url = DEFAULT_OPENAI_BASE_URL
    if not base_url:
        raise ConfigurationError(
            f"Connection '{connection.name}' has no base URL configured."
        )
    logger.debug("backend for %s → %s", connection.name, base_url)
    return OpenAICompatibleBackend(base_url=base_url, api_key=connection.api_key)
