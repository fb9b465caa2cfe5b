"""SQLAlchemy ORM models for conversations and their turns."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Declarative base for all chatrelay tables."""

    pass


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    agent_name: Mapped[str | None] = mapped_column(String(200))
    supplier_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    model: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    parameters: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    # Conversation-level settings: rag_list, search_type
    config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    turns: Mapped[list["ChatTurn"]] = relationship(
        back_populates="conversation",
        order_by="ChatTurn.position",
        cascade="all, delete-orphan",
    )


class ChatTurn(Base):
    __tablename__ = "chat_turns"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    compare_id: Mapped[str | None] = mapped_column(String(64))
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    reasoning: Mapped[str] = mapped_column(Text, nullable=False, default="")
    stat: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    images: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    doc_files: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    tool_calls: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    create_time: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    search_result: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    search_type: Mapped[str | None] = mapped_column(String(200))
    search_query: Mapped[str] = mapped_column(Text, nullable=False, default="")
    tools_result: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    conversation: Mapped[Conversation] = relationship(back_populates="turns")
