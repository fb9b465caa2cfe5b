"""Model capability table and model catalog.

ModelCapabilities answers family questions (vision, reasoning, inline
documents) from configured family markers instead of scattered
name checks. ModelCatalog caches the known model list, resolves context
window sizes and counts per-supplier model usage.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from chatrelay.config import Settings

logger = logging.getLogger(__name__)


def _matches(model: str, families: list[str]) -> bool:
    name = model.lower()
    return any(family.lower() in name for family in families)


class ModelCapabilities:
    """Data-driven capability checks keyed by model family."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._local_models: list[dict[str, Any]] | None = None

    def is_reasoning(self, model: str) -> bool:
        return _matches(model, self._settings.reasoning_families)

    @property
    def reasoning_temperature(self) -> float:
        return self._settings.reasoning_temperature

    def inlines_documents(self, model: str) -> bool:
        """Families that take documents as plain appended text, not fenced blocks."""
        return _matches(model, self._settings.inline_document_families)

    def is_vision(self, supplier: str, model: str) -> bool:
        """Whether the model accepts images natively.

        Remote suppliers are assumed multimodal unless the model belongs to
        a known text-only family. Local models are looked up in the model
        capability list.
        """
        if _matches(model, self._settings.vision_markers):
            return True
        if supplier != self._settings.local_supplier:
            if _matches(model, self._settings.compat_vision_markers):
                return True
            return not _matches(model, self._settings.compat_non_vision_families)

        for info in self._load_local_models():
            if model in (info.get("name"), info.get("full_name")):
                capability = info.get("capability")
                if isinstance(capability, list) and "vision" in capability:
                    return True
        return False

    def _load_local_models(self) -> list[dict[str, Any]]:
        if self._local_models is not None:
            return self._local_models

        path = Path(self._settings.ollama_model_list)
        models: list[dict[str, Any]] = []
        if not path.is_file():
            logger.warning("Model capability list not found: %s", path)
        else:
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                if isinstance(data, list):
                    models = [m for m in data if isinstance(m, dict)]
                else:
                    logger.warning("Model capability list has unexpected format: %s", path)
            except (OSError, json.JSONDecodeError) as e:
                logger.error("Failed to read model capability list %s: %s", path, e)
        self._local_models = models
        return models


@dataclass
class ModelInfo:
    """A model known to the catalog."""

    title: str
    supplier_name: str
    model: str
    size: int = 0
    context_length: int = 0


class ModelCatalog:
    """Session-scoped model list cache with context-length lookup.

    Replaces process-wide model caches: the orchestrator receives one
    instance and callers refresh or clear it explicitly.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models: list[ModelInfo] = []
        self._usage: Counter[tuple[str, str]] = Counter()

    def refresh(self, models: list[ModelInfo]) -> None:
        self._models = list(models)

    def clear(self) -> None:
        self._models = []

    def load_local(self, models: list[dict[str, Any]]) -> None:
        """Replace the cache with models listed by the local backend.

        Entries without a reported window fall back to the family table.
        """
        self.refresh([
            ModelInfo(
                title=m["name"],
                supplier_name=self._settings.local_supplier,
                model=m["name"],
                size=m.get("size") or 0,
                context_length=m.get("context_length") or self.context_length(m["name"]),
            )
            for m in models
        ])

    def get(self, model_key: str) -> ModelInfo:
        """Known model info, or a default entry for the local supplier."""
        for info in self._models:
            if info.model == model_key:
                return info
        return ModelInfo(
            title=model_key,
            supplier_name=self._settings.local_supplier,
            model=model_key,
            context_length=self.context_length(model_key),
        )

    def context_length(self, model: str) -> int:
        """Context window in tokens from the configured family table."""
        name = model.lower()
        best = ""
        for family in self._settings.context_lengths:
            # Longest matching family wins so "qwen2.5" beats "qwen"
            if family.lower() in name and len(family) > len(best):
                best = family
        if best:
            return self._settings.context_lengths[best]
        return self._settings.default_context_length

    def record_usage(self, supplier: str, model_key: str) -> int:
        """Count one turn against a model and return its new total."""
        self._usage[(supplier, model_key)] += 1
        return self._usage[(supplier, model_key)]

    def usage_totals(self) -> list[dict[str, Any]]:
        """Usage counters, most used first."""
        return [
            {"supplier_name": supplier, "model": model, "total": total}
            for (supplier, model), total in self._usage.most_common()
        ]
