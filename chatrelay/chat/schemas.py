"""Pydantic DTOs for chat turns and their inbound requests.

These models define the data contract between the orchestrator,
the history store and the HTTP layer.
"""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatrelay.utils import new_id, now_seconds, split_csv

Role = Literal["system", "user", "assistant"]


class GenerationStat(BaseModel):
    """Generation statistics for one assistant turn.

    Units are normalized across providers: total/eval durations in
    seconds, load/prompt-eval durations in milliseconds.
    """

    model: str = ""
    created_at: str = ""
    total_duration: float = 0
    load_duration: float = 0
    prompt_eval_count: int = 0
    prompt_eval_duration: float = 0
    eval_count: int = 0
    eval_duration: float = 0


class Turn(BaseModel):
    """One persisted message: a user prompt or an assistant reply."""

    id: str = Field(default_factory=new_id)
    conversation_id: str = ""
    compare_id: str | None = None
    role: Role
    content: str = ""
    reasoning: str = ""
    stat: GenerationStat | None = None
    images: list[str] = Field(default_factory=list)
    doc_files: list[str] = Field(default_factory=list)
    tool_calls: str = ""
    created_at: str = ""
    create_time: int = Field(default_factory=now_seconds)
    tokens: int = 0
    search_result: list[dict[str, Any]] = Field(default_factory=list)
    search_type: str | None = None
    search_query: str = ""
    tools_result: list[str] = Field(default_factory=list)


class ConversationContext(BaseModel):
    """Stored conversation plus its conversation-level configuration."""

    conversation_id: str
    title: str = ""
    agent_name: str | None = None
    supplier_name: str = ""
    model: str = ""
    parameters: str = ""
    rag_list: list[str] = Field(default_factory=list)
    search_type: str | None = None
    turns: list[Turn] = Field(default_factory=list)


class ModelSelector(BaseModel):
    """Which backend and model a turn runs against."""

    supplier: str
    model: str
    parameters: str = ""
    is_local: bool = False

    @property
    def model_key(self) -> str:
        """Composite model:parameters key for local models, bare model otherwise."""
        if self.is_local:
            return f"{self.model}:{self.parameters}"
        return self.model


class TurnRequest(BaseModel):
    """Inbound chat request, using the client's wire field names."""

    model_config = ConfigDict(populate_by_name=True)

    context_id: str
    supplier_name: str | None = Field(None, alias="supplierName")
    model: str
    parameters: str | None = None
    user_content: str
    images: str | None = None
    doc_files: str | None = None
    search: str | None = None
    rag_list: str | None = None
    regenerate_id: str | None = None
    temp_chat: bool = False
    compare_id: str | None = None
    mcp_servers: list[str] = Field(default_factory=list)
    rag_results: list[dict[str, Any]] = Field(default_factory=list)
    search_results: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("temp_chat", mode="before")
    @classmethod
    def _parse_temp_chat(cls, value: Any) -> bool:
        # The client sends the flag as the string "true"
        if isinstance(value, str):
            return value.lower() == "true"
        return bool(value)

    @field_validator("mcp_servers", mode="before")
    @classmethod
    def _parse_mcp_servers(cls, value: Any) -> list[str]:
        if value is None or value == "":
            return []
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError:
                return split_csv(value)
            return [str(v) for v in parsed] if isinstance(parsed, list) else [str(parsed)]
        return list(value)

    @property
    def image_list(self) -> list[str]:
        return split_csv(self.images)

    @property
    def doc_file_list(self) -> list[str]:
        return split_csv(self.doc_files)
