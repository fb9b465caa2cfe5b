"""Agent configuration read from JSON files on disk.

An agent lives at ``<agents_dir>/<name>/config.json`` or
``<agents_dir>/<name>.json``; only its system prompt matters here.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from chatrelay.services.base import AgentConfig

logger = logging.getLogger(__name__)


class FileAgentConfigStore:
    def __init__(self, agents_dir: str | Path) -> None:
        self._dir = Path(agents_dir)

    def _path(self, agent_name: str) -> Path | None:
        # Agent names come from stored conversations; keep lookups inside the directory
        if not agent_name or "/" in agent_name or "\\" in agent_name or agent_name.startswith("."):
            logger.warning("Rejecting agent name %r", agent_name)
            return None
        for candidate in (self._dir / agent_name / "config.json", self._dir / f"{agent_name}.json"):
            if candidate.is_file():
                return candidate
        return None

    def get(self, agent_name: str) -> AgentConfig | None:
        path = self._path(agent_name)
        if path is None:
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Failed to read agent config %s: %s", path, e)
            return None
        if not isinstance(data, dict):
            logger.warning("Agent config %s is not an object", path)
            return None
        return AgentConfig(agent_name=agent_name, prompt=str(data.get("prompt") or ""))
