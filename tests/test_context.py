"""Tests for ContextBuilder: ordering, injections, documents and images."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from chatrelay.chat.capabilities import ModelCapabilities
from chatrelay.chat.context import ContextBuilder, format_messages, parse_sources
from chatrelay.chat.schemas import ConversationContext, ModelSelector, Turn, TurnRequest
from chatrelay.i18n import Translator
from chatrelay.services.base import AgentConfig, SearchOutcome


class FakeAttachments:
    def __init__(self, data_urls=None, texts=None, documents=None):
        self.data_urls = data_urls or {}
        self.texts = texts or {}
        self.documents = documents or {}

    async def image_data_url(self, ref):
        return self.data_urls[ref]

    async def image_text(self, ref):
        return self.texts.get(ref, "")

    async def document_text(self, ref):
        if ref not in self.documents:
            raise FileNotFoundError(ref)
        return self.documents[ref]


def _user(content, images=None, doc_files=None):
    return {
        "role": "user",
        "content": content,
        "images": images or [],
        "doc_files": doc_files or [],
        "tool_calls": "",
    }


@pytest.fixture
def retrieval():
    service = MagicMock()
    service.search = AsyncMock(return_value=SearchOutcome(query="q"))
    return service


@pytest.fixture
def web_search():
    service = MagicMock()
    service.search = AsyncMock(return_value=SearchOutcome(query="q"))
    return service


@pytest.fixture
def agents():
    store = MagicMock()
    store.get.return_value = None
    return store


@pytest.fixture
def make_builder(settings, retrieval, web_search, agents):
    def _make(attachments=None):
        return ContextBuilder(
            ModelCapabilities(settings),
            retrieval=retrieval,
            web_search=web_search,
            agents=agents,
            translate=Translator("en"),
            attachments=attachments,
        )

    return _make


async def _build(builder, history, *, model="llama3", supplier="ollama", agent_name=None,
                 sources=None, is_vision=False, local_wire=True, **request_fields):
    request = TurnRequest(
        context_id="c1",
        model=model,
        user_content=history[-1]["content"],
        **request_fields,
    )
    selector = ModelSelector(supplier=supplier, model=model, parameters="8b", is_local=supplier == "ollama")
    context = ConversationContext(conversation_id="c1", agent_name=agent_name)
    reply = Turn(conversation_id="c1", role="assistant")
    messages = await builder.build(
        history, request, selector, context, reply,
        sources=sources, is_vision=is_vision, local_wire=local_wire,
    )
    return messages, reply


# ---------------------------------------------------------------------------
# format_messages
# ---------------------------------------------------------------------------


class TestFormatMessages:
    def test_single_system_first_then_interleaved(self):
        messages = [
            {"role": "system", "content": "S1"},
            {"role": "user", "content": "U1"},
            {"role": "system", "content": "S2"},
            {"role": "user", "content": "U2"},
            {"role": "user", "content": "U3"},
            {"role": "assistant", "content": "A1"},
        ]
        result = format_messages(messages)
        assert [m["content"] for m in result] == ["S1", "U1", "A1", "U2", "U3"]

    def test_no_system(self):
        messages = [
            {"role": "user", "content": "U1"},
            {"role": "assistant", "content": "A1"},
            {"role": "user", "content": "U2"},
        ]
        assert [m["content"] for m in format_messages(messages)] == ["U1", "A1", "U2"]

    def test_other_roles_dropped(self):
        messages = [{"role": "tool", "content": "x"}, {"role": "user", "content": "U1"}]
        assert format_messages(messages) == [{"role": "user", "content": "U1"}]


class TestParseSources:
    def test_json_list(self):
        assert parse_sources('["kb", "docs"]') == ["kb", "docs"]

    def test_empty_list_kept(self):
        assert parse_sources("[]") == []

    def test_missing_or_malformed(self):
        assert parse_sources(None) is None
        assert parse_sources("not json") is None
        assert parse_sources('{"a": 1}') is None


# ---------------------------------------------------------------------------
# Retrieval, search and agent prompt
# ---------------------------------------------------------------------------


class TestInjections:
    @pytest.mark.asyncio
    async def test_retrieval_with_results_skips_web_search(self, make_builder, retrieval, web_search):
        retrieval.search.return_value = SearchOutcome(
            user_prompt="Use the context to answer: hi",
            system_prompt="You answer from the knowledge base.",
            results=[{"doc": "a"}],
            query="hi",
        )
        messages, reply = await _build(
            make_builder(), [_user("hi")], sources=["kb", "docs"], search="web"
        )

        assert messages[0] == {"role": "system", "content": "You answer from the knowledge base."}
        assert messages[-1]["content"] == "Use the context to answer: hi"
        assert reply.search_type == "[RAG]:kb,docs"
        assert reply.search_result == [{"doc": "a"}]
        assert reply.search_query == "hi"
        web_search.search.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retrieval_without_results_falls_through_to_search(self, make_builder, retrieval, web_search):
        web_search.search.return_value = SearchOutcome(
            user_prompt="results + hi", system_prompt="Cite sources.", results=[{"url": "u"}], query="hi"
        )
        messages, reply = await _build(make_builder(), [_user("hi")], sources=["kb"], search="web")

        retrieval.search.assert_awaited_once()
        web_search.search.assert_awaited_once()
        assert reply.search_type == "web"
        assert messages[0]["content"] == "Cite sources."
        assert messages[-1]["content"] == "results + hi"

    @pytest.mark.asyncio
    async def test_retrieval_failure_is_skipped(self, make_builder, retrieval, web_search):
        retrieval.search.side_effect = RuntimeError("index offline")
        messages, reply = await _build(make_builder(), [_user("hi")], sources=["kb"], search="web")

        web_search.search.assert_awaited_once()
        assert messages[-1]["content"] == "hi"

    @pytest.mark.asyncio
    async def test_web_search_gets_short_history(self, make_builder, web_search):
        history = [
            {"role": "user", "content": "q1"},
            {"role": "assistant", "content": "a1"},
            _user("q2"),
        ]
        await _build(make_builder(), history, search="web")

        args = web_search.search.await_args.args
        assert args[0] == "q2"
        assert args[2] == "Question: q1\nAnswer: a1\n"
        assert args[6] == "web"

    @pytest.mark.asyncio
    async def test_web_search_failure_is_skipped(self, make_builder, web_search):
        web_search.search.side_effect = RuntimeError("rate limited")
        messages, reply = await _build(make_builder(), [_user("hi")], search="web")
        assert messages == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_agent_prompt_prepended(self, make_builder, agents):
        agents.get.return_value = AgentConfig(agent_name="helper", prompt="You are Helper.")
        messages, _ = await _build(make_builder(), [_user("hi")], agent_name="helper")

        assert messages[0] == {"role": "system", "content": "You are Helper."}
        agents.get.assert_called_once_with("helper")

    @pytest.mark.asyncio
    async def test_agent_prompt_not_added_after_injection(self, make_builder, agents, web_search):
        agents.get.return_value = AgentConfig(agent_name="helper", prompt="You are Helper.")
        web_search.search.return_value = SearchOutcome(
            user_prompt="rewritten", system_prompt="Cite sources.", results=[{"url": "u"}]
        )
        messages, _ = await _build(make_builder(), [_user("hi")], agent_name="helper", search="web")

        systems = [m for m in messages if m["role"] == "system"]
        assert systems == [{"role": "system", "content": "Cite sources."}]
        agents.get.assert_not_called()


# ---------------------------------------------------------------------------
# Documents and images
# ---------------------------------------------------------------------------


class TestAttachments:
    @pytest.mark.asyncio
    async def test_documents_fenced_for_default_family(self, make_builder):
        reader = FakeAttachments(documents={"a.txt": "alpha", "b.txt": "beta"})
        history = [_user("summarize", doc_files=["a.txt", "b.txt"])]
        messages, _ = await _build(make_builder(reader), history, doc_files="a.txt,b.txt")

        content = messages[-1]["content"]
        assert "<doc_files>\n[User document 1 begin]\nContent: alpha\n[User document 1 end]" in content
        assert "[User document 2 begin]\nContent: beta\n[User document 2 end]\n</doc_files>" in content
        assert content.endswith("## User input:\nsummarize")
        assert "doc_files" not in messages[-1]
        assert "tool_calls" not in messages[-1]

    @pytest.mark.asyncio
    async def test_documents_inline_for_qwen(self, make_builder):
        reader = FakeAttachments(documents={"a.txt": "alpha", "b.txt": "beta"})
        history = [_user("summarize", doc_files=["a.txt", "b.txt"])]
        messages, _ = await _build(make_builder(reader), history, model="qwen2.5", doc_files="a.txt,b.txt")

        assert messages[-1]["content"] == (
            "summarize\n\n"
            "User document 1 begin\nalpha\nUser document 1 end\n\n"
            "User document 2 begin\nbeta\nUser document 2 end\n"
        )

    @pytest.mark.asyncio
    async def test_unreadable_document_skipped(self, make_builder):
        reader = FakeAttachments(documents={"b.txt": "beta"})
        history = [_user("summarize", doc_files=["missing.txt", "b.txt"])]
        messages, _ = await _build(make_builder(reader), history, doc_files="missing.txt,b.txt")

        content = messages[-1]["content"]
        assert "[User document 1 begin]" not in content
        assert "[User document 2 begin]\nContent: beta" in content

    @pytest.mark.asyncio
    async def test_non_vision_gets_ocr_text(self, make_builder):
        reader = FakeAttachments(texts={"sign.png": "STOP"})
        history = [_user("what does it say", images=["sign.png"])]
        messages, _ = await _build(make_builder(reader), history, is_vision=False, images="sign.png")

        assert messages[-1]["content"] == (
            "what does it say\n\nImage 1 OCR result begin\nSTOP\nImage 1 OCR result end\n"
        )
        assert "images" not in messages[-1]

    @pytest.mark.asyncio
    async def test_vision_local_gets_base64_payload(self, make_builder):
        reader = FakeAttachments(data_urls={"cat.png": "data:image/png;base64,QUJD"})
        history = [_user("look", images=["cat.png"])]
        messages, _ = await _build(
            make_builder(reader), history, is_vision=True, local_wire=True, images="cat.png"
        )

        assert messages[-1]["images"] == ["QUJD"]
        assert messages[-1]["content"] == "look"

    @pytest.mark.asyncio
    async def test_vision_compat_gets_content_parts(self, make_builder):
        reader = FakeAttachments(data_urls={"cat.png": "data:image/png;base64,QUJD"})
        history = [_user("look", images=["cat.png"])]
        messages, _ = await _build(
            make_builder(reader), history, model="gpt-4o", supplier="openai",
            is_vision=True, local_wire=False, images="cat.png",
        )

        assert messages[-1]["content"] == [
            {"type": "text", "text": "look"},
            {"type": "image_url", "image_url": {"url": "data:image/png;base64,QUJD"}},
        ]
        assert "images" not in messages[-1]

    @pytest.mark.asyncio
    async def test_empty_images_removed(self, make_builder):
        messages, _ = await _build(make_builder(), [_user("hi")], is_vision=True)
        assert messages == [{"role": "user", "content": "hi"}]
