from __future__ import annotations

from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.infra.db import Base


class ChatMessage(Base):
    """One append to a thread's message log.

    Columns are nullable so that legacy or hand-imported rows can be stored;
    readers validate each row and skip the ones that do not parse.
    """

    __tablename__ = "chat_messages"

    message_id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    thread_key: Mapped[str] = mapped_column(sa.String(300), nullable=False)
    sender_id: Mapped[str | None] = mapped_column(sa.String(128))
    receiver_id: Mapped[str | None] = mapped_column(sa.String(128))
    content: Mapped[str | None] = mapped_column(sa.Text())
    message_type: Mapped[str | None] = mapped_column(sa.String(20), default="text")
    is_read: Mapped[bool] = mapped_column(
        sa.Boolean, nullable=False, default=False, server_default=sa.false()
    )
    timestamp: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=sa.func.now(),
        nullable=False,
    )

    __table_args__ = (
        sa.Index("ix_chat_messages_thread_order", "thread_key", "timestamp", "message_id"),
        sa.Index("ix_chat_messages_receiver_unread", "thread_key", "receiver_id", "is_read"),
    )


class ChatThreadIndex(Base):
    __tablename__ = "chat_thread_index"

    entry_id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    party_id: Mapped[str] = mapped_column(sa.String(128), nullable=False)
    thread_key: Mapped[str] = mapped_column(sa.String(300), nullable=False)
    other_party_id: Mapped[str] = mapped_column(sa.String(128), nullable=False)
    last_message: Mapped[str | None] = mapped_column(sa.Text())
    last_message_time: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True))
    unread_count: Mapped[int] = mapped_column(
        sa.Integer, nullable=False, default=0, server_default="0"
    )

    __table_args__ = (
        sa.UniqueConstraint("party_id", "thread_key", name="uq_chat_thread_index_party_thread"),
        sa.Index("ix_chat_thread_index_party_time", "party_id", "last_message_time"),
        sa.CheckConstraint("unread_count >= 0", name="ck_chat_thread_index_unread"),
    )
