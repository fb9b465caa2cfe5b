"""Collaborator contracts consumed by the turn orchestrator.

Retrieval, web search, agent configuration and attachment reading live
outside the core; these protocols are the only surface it depends on.
"""

from __future__ import annotations

from typing import Any, Protocol

from pydantic import BaseModel, Field


class SearchOutcome(BaseModel):
    """Prompt material produced by retrieval or web search."""

    user_prompt: str = ""
    system_prompt: str = ""
    results: list[dict[str, Any]] = Field(default_factory=list)
    query: str = ""


class AgentConfig(BaseModel):
    """The part of an agent definition the chat core needs."""

    agent_name: str
    prompt: str = ""


class RetrievalService(Protocol):
    async def search(
        self,
        query: str,
        model: str,
        history: list[dict[str, Any]],
        doc_scope: list[str],
        agent_name: str | None,
        prior_results: list[dict[str, Any]],
        sources: list[str],
    ) -> SearchOutcome: ...


class WebSearchService(Protocol):
    async def search(
        self,
        query: str,
        model: str,
        short_history: str,
        doc_scope: list[str],
        agent_name: str | None,
        prior_results: list[dict[str, Any]],
        search_type: str,
    ) -> SearchOutcome: ...


class AgentConfigStore(Protocol):
    def get(self, agent_name: str) -> AgentConfig | None: ...


class AttachmentReader(Protocol):
    """Turns image and document references into model-ready content."""

    async def image_data_url(self, ref: str) -> str: ...

    async def image_text(self, ref: str) -> str: ...

    async def document_text(self, ref: str) -> str: ...


class NullRetrievalService:
    """Retrieval backend used when no knowledge index is configured."""

    async def search(
        self,
        query: str,
        model: str,
        history: list[dict[str, Any]],
        doc_scope: list[str],
        agent_name: str | None,
        prior_results: list[dict[str, Any]],
        sources: list[str],
    ) -> SearchOutcome:
        return SearchOutcome(query=query)
