"""Turn orchestrator -- the entry point for one chat turn.

chat() resolves the model, persists the user turn with an empty assistant
placeholder, assembles the context, opens the backend stream and hands
back a ResponseChannel. A background task then pumps the backend stream
through a StreamReframer, which persists the final assistant turn.

Failures before the stream opens come back as a localized string instead
of a channel; chat() itself never raises.
"""

from __future__ import annotations

import asyncio
import functools
import logging

from chatrelay.backends.base import (
    BackendAdapter,
    BackendConnectionError,
    BackendError,
    ChatOptions,
    DeltaStream,
)
from chatrelay.chat.cancellation import CancellationRegistry, CancellationToken
from chatrelay.chat.capabilities import ModelCapabilities, ModelCatalog
from chatrelay.chat.context import ContextBuilder, parse_sources
from chatrelay.chat.reframer import ResponseChannel, StreamReframer, StreamTiming
from chatrelay.chat.schemas import (
    ConversationContext,
    GenerationStat,
    ModelSelector,
    Turn,
    TurnRequest,
)
from chatrelay.config import Settings
from chatrelay.i18n import Translator
from chatrelay.storage.history import HistoryStore

logger = logging.getLogger(__name__)

# New conversations are titled with the start of their first message
TITLE_LENGTH = 50


class TurnOrchestrator:
    """Runs chat turns end to end and tracks their streaming tasks."""

    def __init__(
        self,
        settings: Settings,
        store: HistoryStore,
        builder: ContextBuilder,
        capabilities: ModelCapabilities,
        catalog: ModelCatalog,
        registry: CancellationRegistry,
        local: BackendAdapter,
        compat: BackendAdapter,
        tools: BackendAdapter,
        translate: Translator,
    ) -> None:
        self._settings = settings
        self._store = store
        self._builder = builder
        self._capabilities = capabilities
        self._catalog = catalog
        self._registry = registry
        self._local = local
        self._compat = compat
        self._tools = tools
        self._t = translate
        self._tasks: set[asyncio.Task] = set()

    @property
    def active_tasks(self) -> int:
        return len(self._tasks)

    def selector_for(self, request: TurnRequest) -> ModelSelector:
        supplier = request.supplier_name or self._settings.local_supplier
        is_local = supplier == self._settings.local_supplier
        # Remote suppliers have no size token; the supplier name stands in for it
        parameters = (request.parameters or "") if is_local else supplier
        return ModelSelector(supplier=supplier, model=request.model, parameters=parameters, is_local=is_local)

    def adapter_for(self, selector: ModelSelector, request: TurnRequest) -> BackendAdapter:
        # Named tool servers override the local path
        if request.mcp_servers:
            return self._tools
        if selector.is_local:
            return self._local
        return self._compat

    def context_length(self, selector: ModelSelector) -> int:
        if selector.is_local:
            info = self._catalog.get(selector.model_key)
            if info.context_length:
                return info.context_length
        return self._catalog.context_length(selector.model)

    async def chat(self, request: TurnRequest) -> ResponseChannel | str:
        """Start a turn. Returns the outgoing channel, or an error string."""
        try:
            return await self._chat(request)
        except Exception as e:
            logger.exception("Turn setup failed for %s", request.context_id)
            return self._t("unexpected_error", e)

    async def _chat(self, request: TurnRequest) -> ResponseChannel | str:
        cid = request.context_id
        selector = self.selector_for(request)
        self._catalog.record_usage(selector.supplier, selector.model_key)

        context = await self._store.read_chat(cid)
        if context is None:
            title = request.user_content[:TITLE_LENGTH]
            await self._store.create_chat(cid, title=title)
            context = ConversationContext(conversation_id=cid, title=title)
        context_length = self.context_length(selector)
        await self._store.update_chat_model(cid, selector.model, selector.parameters, selector.supplier)
        is_vision = self._capabilities.is_vision(selector.supplier, selector.model)

        message = {
            "role": "user",
            "content": request.user_content,
            "images": request.image_list,
            "doc_files": request.doc_file_list,
            "tool_calls": "",
        }
        history = await self._store.build_chat_history(
            cid, message, context_length, request.temp_chat, request.regenerate_id
        )

        user_turn = Turn(
            conversation_id=cid,
            compare_id=request.compare_id,
            role="user",
            content=request.user_content,
            images=request.image_list,
            doc_files=request.doc_file_list,
            search_type=request.search,
        )
        reply = Turn(
            conversation_id=cid,
            compare_id=request.compare_id,
            role="assistant",
            stat=GenerationStat(model=selector.model_key),
            search_type=request.search,
        )
        await self._store.save_chat_history(cid, user_turn, reply, request.regenerate_id)
        await self._store.update_chat_config(cid, "search_type", request.search)

        token = self._registry.start(cid)
        try:
            return await self._open_turn(request, selector, context, history, reply, is_vision, token)
        except Exception:
            self._registry.finish(cid, token)
            raise

    async def _open_turn(
        self,
        request: TurnRequest,
        selector: ModelSelector,
        context: ConversationContext,
        history: list[dict],
        reply: Turn,
        is_vision: bool,
        token: CancellationToken,
    ) -> ResponseChannel | str:
        cid = request.context_id
        sources = parse_sources(request.rag_list)
        if sources is not None:
            await self._store.update_chat_config(cid, "rag_list", sources)

        adapter = self.adapter_for(selector, request)
        messages = await self._builder.build(
            history,
            request,
            selector,
            context,
            reply,
            sources=sources,
            is_vision=is_vision,
            local_wire=adapter is self._local,
        )

        channel = ResponseChannel()
        timing = StreamTiming()
        reframer = StreamReframer(
            channel,
            reply,
            token,
            persist=functools.partial(self._persist, cid),
            translate=self._t,
            model=selector.model_key,
            timing=timing,
        )
        options = ChatOptions(tool_servers=request.mcp_servers, on_side_output=reframer.push_side)

        try:
            stream = await adapter.open(messages, selector, options)
        except BackendConnectionError as e:
            logger.warning("Model connection failed for %s: %s", cid, e)
            self._registry.finish(cid, token)
            return self._t("model_connect_failed", e)
        except BackendError as e:
            logger.warning("Model API call failed for %s: %s", cid, e)
            self._registry.finish(cid, token)
            return self._t("backend_call_failed", e)

        task = asyncio.create_task(self._pump(cid, token, reframer, stream))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("Turn %s started on %s (%s)", reply.id, selector.model_key, selector.supplier)
        return channel

    async def _pump(
        self,
        cid: str,
        token: CancellationToken,
        reframer: StreamReframer,
        stream: DeltaStream,
    ) -> None:
        try:
            reply = await reframer.run(stream)
            logger.info("Turn %s finished (%d chars)", reply.id, len(reply.content))
        finally:
            self._registry.finish(cid, token)

    async def _persist(self, cid: str, reply: Turn) -> None:
        await self._store.set_chat_history(cid, reply.id, reply)

    def stop(self, conversation_id: str) -> bool:
        """Ask the active turn of a conversation to stop at its next delta."""
        return self._registry.stop(conversation_id)

    async def aclose(self) -> None:
        """Cancel in-flight turns; each still persists what it streamed."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
