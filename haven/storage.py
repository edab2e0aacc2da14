"""JSON file storage.

The whole application state lives in one file:

    {base}/
      state.json    ← AppState (users, characters, connections, settings, sessions)

There is no database. load() returns a fresh AppState when the file does not
exist yet; save() rewrites the file through a temporary sibling so a crash
mid-write never leaves half a document behind.
"""

from __future__ import annotations

import logging
from pathlib import Path

from haven.state import AppState

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._base.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._base / STATE_FILE

    def load(self) -> AppState:
        if not self.path.exists():
            logger.info("No state at %s, starting empty", self.path)
            return AppState()
        return AppState.model_validate_json(self.path.read_text())

    def save(self, state: AppState) -> None:
        tmp = self.path.with_suffix(".json.tmp")
        tmp.write_text(state.model_dump_json(indent=2, by_alias=True))
        tmp.replace(self.path)
        logger.debug("saved state to %s", self.path)
