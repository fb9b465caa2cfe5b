"""Conversation history persistence.

HistoryStore is the contract the orchestrator depends on. SqlHistoryStore
implements it on the async SQLAlchemy models; every public method opens
its own session unless one is injected, like the other managers.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.chat.schemas import ConversationContext, GenerationStat, Turn
from chatrelay.storage.database import Database
from chatrelay.storage.models import ChatTurn, Conversation

logger = logging.getLogger(__name__)

REASONING_SPLIT = "\n</think>\n"
# Rough characters-per-token ratio used to trim history to a context window
CHARS_PER_TOKEN = 4


def split_reasoning(content: str) -> tuple[str, str]:
    """Split streamed content into (reasoning, answer) at the first closing marker.

    The reasoning part keeps the marker so it renders as a closed block.
    """
    if REASONING_SPLIT not in content:
        return "", content
    reasoning, _, answer = content.partition(REASONING_SPLIT)
    return reasoning + REASONING_SPLIT, answer


class HistoryStore(Protocol):
    async def read_chat(self, conversation_id: str) -> ConversationContext | None: ...

    async def create_chat(self, conversation_id: str, title: str = "", agent_name: str | None = None) -> None: ...

    async def update_chat_model(self, conversation_id: str, model: str, parameters: str, supplier_name: str) -> None: ...

    async def update_chat_config(self, conversation_id: str, key: str, value: Any) -> None: ...

    async def build_chat_history(
        self,
        conversation_id: str,
        message: dict[str, Any],
        context_length: int,
        temp_chat: bool = False,
        regenerate_id: str | None = None,
    ) -> list[dict[str, Any]]: ...

    async def save_chat_history(
        self,
        conversation_id: str,
        user_turn: Turn,
        reply: Turn,
        regenerate_id: str | None = None,
    ) -> None: ...

    async def set_chat_history(self, conversation_id: str, turn_id: str, reply: Turn) -> None: ...

    async def list_turns(self, conversation_id: str) -> list[Turn]: ...


class SqlHistoryStore:
    """HistoryStore backed by the conversations / chat_turns tables."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def read_chat(
        self, conversation_id: str, session: AsyncSession | None = None
    ) -> ConversationContext | None:
        if session is None:
            async with self.db.session() as session:
                return await self._read_chat(conversation_id, session)
        return await self._read_chat(conversation_id, session)

    async def _read_chat(self, conversation_id: str, session: AsyncSession) -> ConversationContext | None:
        conversation = await session.get(Conversation, conversation_id)
        if conversation is None:
            return None
        config = conversation.config or {}
        return ConversationContext(
            conversation_id=conversation.id,
            title=conversation.title,
            agent_name=conversation.agent_name,
            supplier_name=conversation.supplier_name,
            model=conversation.model,
            parameters=conversation.parameters,
            rag_list=config.get("rag_list") or [],
            search_type=config.get("search_type"),
            turns=await self._list_turns(conversation_id, session),
        )

    async def create_chat(
        self,
        conversation_id: str,
        title: str = "",
        agent_name: str | None = None,
        session: AsyncSession | None = None,
    ) -> None:
        """Create an empty conversation; a no-op if it already exists."""
        if session is None:
            async with self.db.session() as session:
                await self._get_or_create(conversation_id, session, title=title, agent_name=agent_name)
                await session.commit()
                return
        await self._get_or_create(conversation_id, session, title=title, agent_name=agent_name)

    async def _get_or_create(
        self,
        conversation_id: str,
        session: AsyncSession,
        title: str = "",
        agent_name: str | None = None,
    ) -> Conversation:
        conversation = await session.get(Conversation, conversation_id)
        if conversation is None:
            conversation = Conversation(id=conversation_id, title=title, agent_name=agent_name, config={})
            session.add(conversation)
            await session.flush()
        return conversation

    async def update_chat_model(self, conversation_id: str, model: str, parameters: str, supplier_name: str) -> None:
        """Record the model a conversation last ran against, creating it if needed."""
        async with self.db.session() as session:
            conversation = await self._get_or_create(conversation_id, session)
            conversation.model = model
            conversation.parameters = parameters
            conversation.supplier_name = supplier_name
            await session.commit()

    async def update_chat_config(self, conversation_id: str, key: str, value: Any) -> None:
        async with self.db.session() as session:
            conversation = await self._get_or_create(conversation_id, session)
            # Reassign so the JSON column is flagged dirty
            config = dict(conversation.config or {})
            config[key] = value
            conversation.config = config
            await session.commit()

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def build_chat_history(
        self,
        conversation_id: str,
        message: dict[str, Any],
        context_length: int,
        temp_chat: bool = False,
        regenerate_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Prior turns that fit the context window, followed by the new message.

        Temporary chats carry no prior history. When regenerating, the
        targeted pair and everything after it is left out.
        """
        if temp_chat:
            return [message]

        async with self.db.session() as session:
            rows = await self._rows(conversation_id, session)
            if regenerate_id:
                cutoff = await self._regenerate_positions(conversation_id, regenerate_id, session)
                if cutoff is not None:
                    rows = [row for row in rows if row.position < cutoff[0]]

        remaining = context_length * CHARS_PER_TOKEN - len(message.get("content") or "")
        prior: list[dict[str, Any]] = []
        for row in reversed(rows):
            size = len(row.content)
            if size > remaining:
                break
            remaining -= size
            prior.append({"role": row.role, "content": row.content})
        prior.reverse()
        # Never open the window on a dangling assistant reply
        while prior and prior[0]["role"] != "user":
            prior.pop(0)
        return prior + [message]

    async def save_chat_history(
        self,
        conversation_id: str,
        user_turn: Turn,
        reply: Turn,
        regenerate_id: str | None = None,
    ) -> None:
        """Insert a user turn and its assistant placeholder.

        With regenerate_id, the targeted assistant turn and the user turn
        before it are replaced at the same positions.
        """
        async with self.db.session() as session:
            await self._get_or_create(conversation_id, session)
            positions = None
            if regenerate_id:
                positions = await self._regenerate_positions(conversation_id, regenerate_id, session)
                if positions is None:
                    logger.warning(
                        "Regenerate target %s not found in %s, appending instead",
                        regenerate_id, conversation_id,
                    )
                else:
                    await session.execute(
                        delete(ChatTurn).where(
                            ChatTurn.conversation_id == conversation_id,
                            ChatTurn.position.in_(positions),
                        )
                    )
            if positions is None:
                result = await session.execute(
                    select(func.max(ChatTurn.position)).where(ChatTurn.conversation_id == conversation_id)
                )
                last = result.scalar()
                start = 0 if last is None else last + 1
                positions = (start, start + 1)

            session.add(self._to_row(conversation_id, user_turn, positions[0]))
            session.add(self._to_row(conversation_id, reply, positions[1]))
            await session.commit()

    async def set_chat_history(self, conversation_id: str, turn_id: str, reply: Turn) -> None:
        """Final write of an assistant turn; reasoning is split from the answer."""
        reasoning, content = split_reasoning(reply.content)
        async with self.db.session() as session:
            row = await session.get(ChatTurn, turn_id)
            if row is None:
                logger.warning("Turn %s of %s vanished before the final write", turn_id, conversation_id)
                return
            row.content = content
            row.reasoning = reasoning or reply.reasoning
            row.stat = reply.stat.model_dump() if reply.stat else None
            row.created_at = reply.created_at
            row.create_time = reply.create_time
            row.tokens = reply.tokens
            row.search_result = list(reply.search_result)
            row.search_type = reply.search_type
            row.search_query = reply.search_query
            row.tools_result = list(reply.tools_result)
            await session.commit()

    async def list_turns(self, conversation_id: str, session: AsyncSession | None = None) -> list[Turn]:
        if session is None:
            async with self.db.session() as session:
                return await self._list_turns(conversation_id, session)
        return await self._list_turns(conversation_id, session)

    async def _list_turns(self, conversation_id: str, session: AsyncSession) -> list[Turn]:
        return [self._to_turn(row) for row in await self._rows(conversation_id, session)]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _rows(self, conversation_id: str, session: AsyncSession) -> list[ChatTurn]:
        result = await session.execute(
            select(ChatTurn).where(ChatTurn.conversation_id == conversation_id).order_by(ChatTurn.position)
        )
        return list(result.scalars().all())

    async def _regenerate_positions(
        self, conversation_id: str, regenerate_id: str, session: AsyncSession
    ) -> tuple[int, int] | None:
        """(user, assistant) positions of the pair a regenerate request targets."""
        target = await session.get(ChatTurn, regenerate_id)
        if target is None or target.conversation_id != conversation_id or target.role != "assistant":
            return None
        result = await session.execute(
            select(func.max(ChatTurn.position)).where(
                ChatTurn.conversation_id == conversation_id,
                ChatTurn.role == "user",
                ChatTurn.position < target.position,
            )
        )
        user_position = result.scalar()
        if user_position is None:
            return None
        return user_position, target.position

    def _to_row(self, conversation_id: str, turn: Turn, position: int) -> ChatTurn:
        return ChatTurn(
            id=turn.id,
            conversation_id=conversation_id,
            position=position,
            compare_id=turn.compare_id,
            role=turn.role,
            content=turn.content,
            reasoning=turn.reasoning,
            stat=turn.stat.model_dump() if turn.stat else None,
            images=list(turn.images),
            doc_files=list(turn.doc_files),
            tool_calls=turn.tool_calls,
            created_at=turn.created_at,
            create_time=turn.create_time,
            tokens=turn.tokens,
            search_result=list(turn.search_result),
            search_type=turn.search_type,
            search_query=turn.search_query,
            tools_result=list(turn.tools_result),
        )

    def _to_turn(self, row: ChatTurn) -> Turn:
        return Turn(
            id=row.id,
            conversation_id=row.conversation_id,
            compare_id=row.compare_id,
            role=row.role,  # type: ignore[arg-type]
            content=row.content,
            reasoning=row.reasoning,
            stat=GenerationStat(**row.stat) if row.stat else None,
            images=row.images or [],
            doc_files=row.doc_files or [],
            tool_calls=row.tool_calls,
            created_at=row.created_at,
            create_time=row.create_time,
            tokens=row.tokens,
            search_result=row.search_result or [],
            search_type=row.search_type,
            search_query=row.search_query,
            tools_result=row.tools_result or [],
        )
