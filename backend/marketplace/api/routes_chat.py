import asyncio
import json
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.dependencies import get_db_session, get_services, require_party_id
from marketplace.domain.chat_threads import service as chat_service
from marketplace.domain.chat_threads.schemas import (
    ChatHistory,
    ChatHistoryResponse,
    ChatMessageCreateRequest,
    ChatMessageRecord,
    ChatSummary,
    MarkReadResponse,
    SkippedRecord,
)
from marketplace.domain.errors import InputValidationError
from marketplace.infra.events import ThreadEventHub
from marketplace.services import AppServices

logger = logging.getLogger(__name__)

router = APIRouter()


def _history_response(key: str, history: ChatHistory) -> ChatHistoryResponse:
    return ChatHistoryResponse(
        thread_key=key,
        messages=history.messages,
        skipped=[SkippedRecord(detail=error.detail, errors=error.errors) for error in history.errors],
    )


def format_sse(event: dict[str, Any]) -> str:
    name = event.get("event", "message")
    return f"event: {name}\ndata: {json.dumps(event, default=str)}\n\n"


async def thread_event_stream(
    hub: ThreadEventHub,
    key: str,
    *,
    keepalive_seconds: float,
    is_disconnected: Callable[[], Awaitable[bool]],
) -> AsyncIterator[str]:
    async with hub.subscribe(key) as queue:
        yield ": connected\n\n"
        while not await is_disconnected():
            try:
                event = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield format_sse(event)


@router.post(
    "/v1/chat/messages",
    response_model=ChatMessageRecord,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    payload: ChatMessageCreateRequest,
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> ChatMessageRecord:
    return await chat_service.send_message(
        session,
        party_id,
        payload.receiver_id,
        payload.content,
        payload.message_type,
        locks=services.locks,
        hub=services.hub,
        notifier=services.notifier,
    )


@router.get("/v1/chat/threads", response_model=list[ChatSummary])
async def list_threads(
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
) -> list[ChatSummary]:
    return await chat_service.list_threads(session, party_id)


@router.get("/v1/chat/threads/{other_party_id}/messages", response_model=ChatHistoryResponse)
async def load_history(
    other_party_id: str,
    request: Request,
    since: datetime | None = Query(None),
    since_message_id: int = Query(0, ge=0),
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
) -> ChatHistoryResponse:
    limit = request.app.state.app_settings.chat_history_limit
    if since is not None:
        history = await chat_service.load_history_since(
            session,
            party_id,
            other_party_id,
            since,
            since_message_id,
            reader_id=party_id,
            limit=limit,
        )
    else:
        history = await chat_service.load_history(
            session, party_id, other_party_id, reader_id=party_id, limit=limit
        )
    return _history_response(chat_service.thread_key(party_id, other_party_id), history)


@router.post("/v1/chat/threads/{thread_key}/read", response_model=MarkReadResponse)
async def mark_all_read(
    thread_key: str,
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> MarkReadResponse:
    updated = await chat_service.mark_all_read(
        session, thread_key, reader_id=party_id, locks=services.locks
    )
    return MarkReadResponse(thread_key=thread_key, updated=updated)


@router.post(
    "/v1/chat/threads/{thread_key}/messages/{message_id}/read",
    response_model=MarkReadResponse,
)
async def mark_read(
    thread_key: str,
    message_id: int,
    party_id: str = Depends(require_party_id),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> MarkReadResponse:
    updated = await chat_service.mark_read(
        session, message_id, thread_key, reader_id=party_id, locks=services.locks
    )
    return MarkReadResponse(thread_key=thread_key, updated=updated)


@router.get("/v1/chat/threads/{other_party_id}/stream")
async def stream_thread(
    other_party_id: str,
    request: Request,
    party_id: str = Depends(require_party_id),
    services: AppServices = Depends(get_services),
) -> StreamingResponse:
    if other_party_id == party_id:
        raise InputValidationError(detail="Cannot open a chat stream with yourself")
    key = chat_service.participant_key(party_id, other_party_id)
    logger.info("chat_stream_opened", extra={"extra": {"thread_key": key, "party_id": party_id}})
    return StreamingResponse(
        thread_event_stream(
            services.hub,
            key,
            keepalive_seconds=request.app.state.app_settings.chat_stream_keepalive_seconds,
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
