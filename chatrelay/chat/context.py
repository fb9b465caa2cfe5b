"""Context assembly -- builds the message list sent to a backend for one turn.

Takes prior history plus the new user message and folds in, in order:
retrieval results, web-search results, the agent system prompt, attached
document text and image content. Finishes by enforcing strict role
alternation with at most one leading system message.

Every injection is best-effort: a failing collaborator is logged and that
injection is skipped, the turn proceeds with whatever context succeeded.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from chatrelay.chat.capabilities import ModelCapabilities
from chatrelay.chat.schemas import ConversationContext, ModelSelector, Turn, TurnRequest
from chatrelay.i18n import Translator
from chatrelay.services.base import (
    AgentConfigStore,
    AttachmentReader,
    RetrievalService,
    WebSearchService,
)

logger = logging.getLogger(__name__)

RAG_SEARCH_PREFIX = "[RAG]:"
TRANSIENT_FIELDS = ("tool_calls", "doc_files")


def format_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Keep the first system message in front, then alternate user/assistant.

    Users and assistants are paired by index for as long as either side
    has entries left, so [U1, U2, U3] + [A1] gives [U1, A1, U2, U3].
    Other roles are dropped.
    """
    system = next((m for m in messages if m.get("role") == "system"), None)
    users = [m for m in messages if m.get("role") == "user"]
    assistants = [m for m in messages if m.get("role") == "assistant"]

    formatted: list[dict[str, Any]] = []
    if system is not None:
        formatted.append(system)
    for i in range(max(len(users), len(assistants))):
        if i < len(users):
            formatted.append(users[i])
        if i < len(assistants):
            formatted.append(assistants[i])
    return formatted


def parse_sources(rag_list: str | None) -> list[str] | None:
    """Decode the JSON-encoded retrieval source list; None when absent or malformed."""
    if not rag_list:
        return None
    try:
        sources = json.loads(rag_list)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed retrieval source list: %s", rag_list[:200])
        return None
    if not isinstance(sources, list):
        logger.warning("Retrieval source list is not a list: %s", rag_list[:200])
        return None
    return [str(s) for s in sources]


class ContextBuilder:
    """Assembles the ordered backend message list for one turn."""

    def __init__(
        self,
        capabilities: ModelCapabilities,
        retrieval: RetrievalService,
        web_search: WebSearchService,
        agents: AgentConfigStore,
        translate: Translator,
        attachments: AttachmentReader | None = None,
    ) -> None:
        self._capabilities = capabilities
        self._retrieval = retrieval
        self._web_search = web_search
        self._agents = agents
        self._t = translate
        self._attachments = attachments

    async def build(
        self,
        history: list[dict[str, Any]],
        request: TurnRequest,
        selector: ModelSelector,
        context: ConversationContext,
        reply: Turn,
        *,
        sources: list[str] | None,
        is_vision: bool,
        local_wire: bool,
    ) -> list[dict[str, Any]]:
        """Return backend-ready messages; records search provenance on reply.

        history must end with the new user message. local_wire selects the
        image encoding of the adapter that will carry the request.
        """
        messages = list(history)
        user_content = request.user_content

        search_type = request.search
        if sources:
            search_type = await self.inject_retrieval(
                messages, request, selector, context, reply, sources, search_type
            )
        if search_type:
            await self.inject_web_search(messages, request, selector, context, reply, search_type)

        last = messages[-1]
        if messages[0].get("role") != "system" and last.get("content") == user_content:
            self.inject_agent_prompt(messages, context.agent_name)

        await self.resolve_attachments(last, is_vision)
        self.fold_documents(last, selector.model, user_content)
        self.fold_image_text(last, is_vision)

        for field in TRANSIENT_FIELDS:
            last.pop(field, None)
        if is_vision:
            self.encode_images(last, local_wire)
        else:
            last.pop("images", None)
        if not last.get("images"):
            last.pop("images", None)

        return format_messages(messages)

    # ------------------------------------------------------------------
    # Retrieval and search
    # ------------------------------------------------------------------

    async def inject_retrieval(
        self,
        messages: list[dict[str, Any]],
        request: TurnRequest,
        selector: ModelSelector,
        context: ConversationContext,
        reply: Turn,
        sources: list[str],
        search_type: str | None,
    ) -> str | None:
        """Run retrieval; returns the web-search tag still to run (cleared on hits)."""
        try:
            outcome = await self._retrieval.search(
                request.user_content,
                selector.model_key,
                messages,
                request.doc_file_list,
                context.agent_name,
                request.rag_results,
                sources,
            )
        except Exception as e:
            logger.warning("Retrieval injection skipped: %s", e)
            return search_type

        reply.search_query = outcome.query
        reply.search_type = RAG_SEARCH_PREFIX + ",".join(sources)
        reply.search_result = outcome.results
        if outcome.results and outcome.system_prompt:
            messages.insert(0, {"role": "system", "content": outcome.system_prompt})
        if outcome.user_prompt:
            messages[-1]["content"] = outcome.user_prompt
        if outcome.results:
            return ""
        return search_type

    async def inject_web_search(
        self,
        messages: list[dict[str, Any]],
        request: TurnRequest,
        selector: ModelSelector,
        context: ConversationContext,
        reply: Turn,
        search_type: str,
    ) -> None:
        short_history = ""
        if len(messages) > 2:
            short_history += self._t("question") + _text(messages[-3].get("content")) + "\n"
            short_history += self._t("answer") + _text(messages[-2].get("content")) + "\n"

        try:
            outcome = await self._web_search.search(
                request.user_content,
                selector.model_key,
                short_history,
                request.doc_file_list,
                context.agent_name,
                request.search_results,
                search_type,
            )
        except Exception as e:
            logger.warning("Web search injection skipped: %s", e)
            return

        reply.search_query = outcome.query
        reply.search_type = search_type
        reply.search_result = outcome.results
        if outcome.system_prompt and outcome.results:
            messages.insert(0, {"role": "system", "content": outcome.system_prompt})
        if outcome.user_prompt:
            messages[-1]["content"] = outcome.user_prompt

    def inject_agent_prompt(self, messages: list[dict[str, Any]], agent_name: str | None) -> None:
        if not agent_name:
            return
        try:
            agent = self._agents.get(agent_name)
        except Exception as e:
            logger.warning("Agent prompt for %s skipped: %s", agent_name, e)
            return
        if agent is not None and agent.prompt:
            messages.insert(0, {"role": "system", "content": agent.prompt})

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    async def resolve_attachments(self, message: dict[str, Any], is_vision: bool) -> None:
        """Replace attachment references with image data or text.

        Vision models get image data URLs; other models get OCR text.
        Unreadable attachments become empty entries and are skipped later.
        """
        if self._attachments is None:
            return
        reader = self._attachments

        images: list[str] = []
        for ref in message.get("images") or []:
            try:
                images.append(await (reader.image_data_url(ref) if is_vision else reader.image_text(ref)))
            except Exception as e:
                logger.warning("Image %s skipped: %s", ref, e)
                images.append("")
        message["images"] = images

        documents: list[str] = []
        for ref in message.get("doc_files") or []:
            try:
                documents.append(await reader.document_text(ref))
            except Exception as e:
                logger.warning("Document %s skipped: %s", ref, e)
                documents.append("")
        message["doc_files"] = documents

    def fold_documents(self, message: dict[str, Any], model: str, user_content: str) -> None:
        """Fold document text into the message, unless retrieval already rewrote it."""
        documents = message.get("doc_files") or []
        if message.get("content") != user_content or not documents:
            return
        if not any(documents):
            return

        label = self._t("user_document")
        if self._capabilities.inlines_documents(model):
            blocks = [
                f"{label} {i + 1} begin\n{doc}\n{label} {i + 1} end\n"
                for i, doc in enumerate(documents)
                if doc
            ]
            message["content"] = user_content + "\n\n" + "\n".join(blocks)
            return

        blocks = [
            f"[{label} {i + 1} begin]\n{self._t('content')}: {doc}\n[{label} {i + 1} end]"
            for i, doc in enumerate(documents)
            if doc
        ]
        message["content"] = (
            f"## {self._t('documents_header')}\n"
            f"<doc_files>\n{chr(10).join(blocks)}\n</doc_files>\n"
            f"## {self._t('user_input')}:\n{user_content}"
        )

    def fold_image_text(self, message: dict[str, Any], is_vision: bool) -> None:
        """Append OCR text blocks for models without native vision."""
        if is_vision:
            return
        texts = message.get("images") or []
        label = f"{self._t('image')}"
        ocr = self._t("ocr_result")
        blocks = [
            f"{label} {i + 1} {ocr} begin\n{text}\n{label} {i + 1} {ocr} end\n"
            for i, text in enumerate(texts)
            if text
        ]
        if blocks:
            message["content"] = _text(message.get("content")) + "\n\n" + "\n".join(blocks)

    @staticmethod
    def encode_images(message: dict[str, Any], local_wire: bool) -> None:
        """Encode image data URLs for the target wire format.

        Local models take bare base64 in ``images``; OpenAI-compatible
        providers take ``image_url`` content parts.
        """
        images = [image for image in message.get("images") or [] if image]
        if not images:
            message.pop("images", None)
            return
        if local_wire:
            message["images"] = [image.split(",", 1)[1] for image in images if "," in image]
            return
        parts: list[dict[str, Any]] = [{"type": "text", "text": _text(message.get("content"))}]
        for image in images:
            parts.append({"type": "image_url", "image_url": {"url": image}})
        message["content"] = parts
        message.pop("images", None)


def _text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(part.get("text", "") for part in content if isinstance(part, dict))
    return ""
