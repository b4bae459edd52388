from __future__ import annotations

import logging
from datetime import datetime, timezone

import sqlalchemy as sa
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.domain.chat_threads.db_models import ChatMessage, ChatThreadIndex
from marketplace.domain.chat_threads.schemas import (
    ChatHistory,
    ChatMessageRecord,
    ChatSummary,
    MessageType,
)
from marketplace.domain.errors import (
    InputValidationError,
    InvalidMessageDataError,
    NotFoundError,
    PermissionDeniedError,
)
from marketplace.domain.parties.db_models import Party
from marketplace.infra import locks as entity_locks
from marketplace.infra.events import ThreadEventHub
from marketplace.infra.locks import EntityLocks
from marketplace.infra.metrics import metrics
from marketplace.infra.push import PushNotification, PushNotifier, dispatch

logger = logging.getLogger(__name__)

LOCK_KIND = "thread"
PREVIEW_LENGTH = 120
KEY_SEPARATOR = "_"


def thread_key(party_a: str, party_b: str) -> str:
    return KEY_SEPARATOR.join(sorted([party_a, party_b]))


def validate_party_id(party_id: str) -> None:
    # a separator inside an id would let two different pairs share one key
    if KEY_SEPARATOR in party_id:
        raise InputValidationError(
            detail=f"Party id {party_id!r} must not contain {KEY_SEPARATOR!r}",
            errors=[{"field": "party_id", "message": f"must not contain {KEY_SEPARATOR!r}"}],
        )


def participant_key(party_a: str, party_b: str) -> str:
    """Thread key for two chat participants, rejecting ids that cannot form a unique key."""
    validate_party_id(party_a)
    validate_party_id(party_b)
    return thread_key(party_a, party_b)


def _as_utc(value: datetime) -> datetime:
    # sqlite hands back naive datetimes for timezone-aware columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_message(
    row: ChatMessage, participants: tuple[str, str] | None = None
) -> ChatMessageRecord:
    """Validates a stored row; raises InvalidMessageDataError if it is malformed.

    With ``participants``, the row must also be a message between exactly those two parties.
    """
    try:
        record = ChatMessageRecord(
            message_id=row.message_id,
            thread_key=row.thread_key,
            sender_id=row.sender_id,
            receiver_id=row.receiver_id,
            content=row.content,
            message_type=row.message_type,
            timestamp=_as_utc(row.timestamp) if row.timestamp is not None else None,
            is_read=bool(row.is_read),
        )
    except ValidationError as exc:
        raise InvalidMessageDataError(
            detail=f"Message {row.message_id} is malformed",
            errors=[
                {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
                for error in exc.errors()
            ],
        ) from exc
    if thread_key(record.sender_id, record.receiver_id) != record.thread_key:
        raise InvalidMessageDataError(
            detail=f"Message {row.message_id} participants do not match thread {row.thread_key}"
        )
    if participants is not None and {record.sender_id, record.receiver_id} != set(participants):
        raise InvalidMessageDataError(
            detail=f"Message {row.message_id} does not belong to the requested parties"
        )
    return record


def _collect(rows: list[ChatMessage], key: str, participants: tuple[str, str]) -> ChatHistory:
    history = ChatHistory()
    for row in rows:
        try:
            history.messages.append(parse_message(row, participants))
        except InvalidMessageDataError as exc:
            history.errors.append(exc)
    if history.errors:
        logger.warning(
            "chat_history_skipped_records",
            extra={
                "extra": {
                    "thread_key": key,
                    "skipped": len(history.errors),
                    "returned": len(history.messages),
                }
            },
        )
    return history


def _assert_reader(party_a: str, party_b: str, reader_id: str | None) -> None:
    if reader_id is not None and reader_id not in (party_a, party_b):
        raise PermissionDeniedError(detail="Only thread participants may read this thread")


async def _upsert_index(
    session: AsyncSession,
    *,
    party_id: str,
    key: str,
    other_party_id: str,
    preview: str,
    sent_at: datetime,
    unread_increment: int,
) -> ChatThreadIndex:
    entry = await session.scalar(
        sa.select(ChatThreadIndex)
        .where(ChatThreadIndex.party_id == party_id, ChatThreadIndex.thread_key == key)
        .with_for_update()
    )
    if entry is None:
        entry = ChatThreadIndex(
            party_id=party_id,
            thread_key=key,
            other_party_id=other_party_id,
            unread_count=0,
        )
        session.add(entry)
    entry.last_message = preview
    entry.last_message_time = sent_at
    entry.unread_count = (entry.unread_count or 0) + unread_increment
    return entry


async def _recompute_unread(session: AsyncSession, key: str, party_id: str) -> int:
    unread = await session.scalar(
        sa.select(sa.func.count(ChatMessage.message_id)).where(
            ChatMessage.thread_key == key,
            ChatMessage.receiver_id == party_id,
            ChatMessage.is_read.is_(False),
        )
    )
    await session.execute(
        sa.update(ChatThreadIndex)
        .where(ChatThreadIndex.party_id == party_id, ChatThreadIndex.thread_key == key)
        .values(unread_count=int(unread or 0))
    )
    return int(unread or 0)


async def send_message(
    session: AsyncSession,
    sender_id: str,
    receiver_id: str,
    content: str,
    message_type: MessageType | str = MessageType.text,
    *,
    locks: EntityLocks | None = None,
    hub: ThreadEventHub | None = None,
    notifier: PushNotifier | None = None,
) -> ChatMessageRecord:
    if not sender_id or not receiver_id:
        raise InputValidationError(detail="sender_id and receiver_id are required")
    if sender_id == receiver_id:
        raise InputValidationError(detail="Cannot send a message to yourself")
    body = (content or "").strip()
    if not body:
        raise InputValidationError(detail="Message content must not be empty")
    try:
        kind = MessageType(message_type)
    except ValueError as exc:
        raise InputValidationError(detail=f"Unknown message type: {message_type}") from exc
    key = participant_key(sender_id, receiver_id)

    async with entity_locks.hold(locks, LOCK_KIND, key):
        sent_at = datetime.now(timezone.utc)
        latest = await session.scalar(
            sa.select(sa.func.max(ChatMessage.timestamp)).where(ChatMessage.thread_key == key)
        )
        if latest is not None and _as_utc(latest) > sent_at:
            sent_at = _as_utc(latest)

        message = ChatMessage(
            thread_key=key,
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=body,
            message_type=kind.value,
            is_read=False,
            timestamp=sent_at,
        )
        session.add(message)
        preview = body[:PREVIEW_LENGTH]
        await _upsert_index(
            session,
            party_id=sender_id,
            key=key,
            other_party_id=receiver_id,
            preview=preview,
            sent_at=sent_at,
            unread_increment=0,
        )
        await _upsert_index(
            session,
            party_id=receiver_id,
            key=key,
            other_party_id=sender_id,
            preview=preview,
            sent_at=sent_at,
            unread_increment=1,
        )
        await session.commit()
        record = parse_message(message)

    metrics.record_chat_message(kind.value)
    logger.info(
        "chat_message_sent",
        extra={
            "extra": {
                "thread_key": key,
                "message_id": record.message_id,
                "sender_id": sender_id,
                "message_type": kind.value,
            }
        },
    )
    if hub is not None:
        hub.publish(key, {"event": "new_message", "message": record.model_dump(mode="json")})
    if notifier is not None:
        receiver = await session.get(Party, receiver_id)
        sender = await session.get(Party, sender_id)
        if receiver is not None:
            await dispatch(
                notifier,
                PushNotification(
                    party_id=receiver_id,
                    event="new_message",
                    title=sender.name if sender is not None else "New message",
                    body=preview if kind == MessageType.text else f"Sent a {kind.value}",
                    device_token=receiver.device_token,
                    data={"thread_key": key, "message_id": record.message_id},
                ),
            )
    return record


async def load_history(
    session: AsyncSession,
    party_a: str,
    party_b: str,
    *,
    reader_id: str | None = None,
    limit: int | None = None,
) -> ChatHistory:
    _assert_reader(party_a, party_b, reader_id)
    key = participant_key(party_a, party_b)
    if limit:
        stmt = (
            sa.select(ChatMessage)
            .where(ChatMessage.thread_key == key)
            .order_by(ChatMessage.timestamp.desc(), ChatMessage.message_id.desc())
            .limit(limit)
        )
        rows = list(reversed((await session.execute(stmt)).scalars().all()))
    else:
        stmt = (
            sa.select(ChatMessage)
            .where(ChatMessage.thread_key == key)
            .order_by(ChatMessage.timestamp.asc(), ChatMessage.message_id.asc())
        )
        rows = list((await session.execute(stmt)).scalars().all())
    return _collect(rows, key, (party_a, party_b))


async def load_history_since(
    session: AsyncSession,
    party_a: str,
    party_b: str,
    since: datetime,
    since_message_id: int = 0,
    *,
    reader_id: str | None = None,
    limit: int | None = None,
) -> ChatHistory:
    _assert_reader(party_a, party_b, reader_id)
    key = participant_key(party_a, party_b)
    since = _as_utc(since)
    stmt = (
        sa.select(ChatMessage)
        .where(
            ChatMessage.thread_key == key,
            sa.or_(
                ChatMessage.timestamp > since,
                sa.and_(ChatMessage.timestamp == since, ChatMessage.message_id > since_message_id),
            ),
        )
        .order_by(ChatMessage.timestamp.asc(), ChatMessage.message_id.asc())
    )
    if limit:
        stmt = stmt.limit(limit)
    rows = list((await session.execute(stmt)).scalars().all())
    return _collect(rows, key, (party_a, party_b))


async def mark_read(
    session: AsyncSession,
    message_id: int,
    key: str,
    *,
    reader_id: str | None = None,
    locks: EntityLocks | None = None,
) -> int:
    """Flips one message to read. Returns 1 if it changed, 0 if it was already read."""
    async with entity_locks.hold(locks, LOCK_KIND, key):
        message = await session.scalar(
            sa.select(ChatMessage)
            .where(ChatMessage.message_id == message_id, ChatMessage.thread_key == key)
            .with_for_update()
        )
        if message is None:
            raise NotFoundError(detail=f"Message {message_id} not found in thread {key}")
        if reader_id is not None and reader_id != message.receiver_id:
            if reader_id == message.sender_id:
                return 0
            raise PermissionDeniedError(detail="Only thread participants may mark messages read")

        updated = 0
        if not message.is_read:
            message.is_read = True
            updated = 1
        if message.receiver_id:
            await session.flush()
            await _recompute_unread(session, key, message.receiver_id)
        await session.commit()
    return updated


async def mark_all_read(
    session: AsyncSession,
    key: str,
    *,
    reader_id: str | None = None,
    locks: EntityLocks | None = None,
) -> int:
    async with entity_locks.hold(locks, LOCK_KIND, key):
        if reader_id is not None:
            participant = await session.scalar(
                sa.select(ChatThreadIndex.entry_id).where(
                    ChatThreadIndex.party_id == reader_id, ChatThreadIndex.thread_key == key
                )
            )
            if participant is None:
                raise PermissionDeniedError(detail="Only thread participants may mark messages read")
            receivers = [reader_id]
        else:
            receivers = [
                receiver
                for receiver in (
                    await session.execute(
                        sa.select(ChatMessage.receiver_id)
                        .where(ChatMessage.thread_key == key, ChatMessage.is_read.is_(False))
                        .distinct()
                    )
                ).scalars()
                if receiver
            ]

        stmt = sa.update(ChatMessage).where(
            ChatMessage.thread_key == key, ChatMessage.is_read.is_(False)
        )
        if reader_id is not None:
            stmt = stmt.where(ChatMessage.receiver_id == reader_id)
        result = await session.execute(stmt.values(is_read=True))
        for receiver in receivers:
            await _recompute_unread(session, key, receiver)
        await session.commit()

    updated = int(result.rowcount or 0)
    logger.info(
        "chat_thread_marked_read",
        extra={"extra": {"thread_key": key, "reader_id": reader_id, "updated": updated}},
    )
    return updated


async def list_threads(session: AsyncSession, party_id: str) -> list[ChatSummary]:
    stmt = (
        sa.select(ChatThreadIndex)
        .where(ChatThreadIndex.party_id == party_id)
        .order_by(
            ChatThreadIndex.last_message_time.desc(),
            ChatThreadIndex.thread_key.asc(),
        )
    )
    entries = (await session.execute(stmt)).scalars().all()
    return [
        ChatSummary(
            thread_key=entry.thread_key,
            other_party_id=entry.other_party_id,
            last_message=entry.last_message,
            last_message_time=_as_utc(entry.last_message_time) if entry.last_message_time else None,
            unread_count=entry.unread_count,
        )
        for entry in entries
    ]
