"""
Channel API endpoints - registry access for widgets and the agent console.
Includes a Server-Sent Events stream of live registry events.
"""

import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from ..config import ChatConfig
from ..core.errors import ChannelClosedError, ChannelNotFoundError, ChatError, TransportError
from ..models import (
    Channel, ChannelCreate, ChannelPatch, ChannelQuery, ChatMessage, MessageCreate, channel_id_for,
)
from ..registry import ChannelRegistry
from ..utils.auth import get_current_identity
from .deps import get_chat_config, get_registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/channels", tags=["channels"])

KEEPALIVE_SECONDS = 15.0


def _http_error(e: ChatError) -> HTTPException:
    """Map a registry error onto an HTTP status."""
    if isinstance(e, ChannelNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, ChannelClosedError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(e, TransportError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(e))


async def _member_channel(registry: ChannelRegistry, channel_id: str, identity: str) -> Channel:
    try:
        channel = await registry.get(channel_id)
    except ChatError as e:
        raise _http_error(e)
    if identity not in channel.members:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a member of this channel")
    return channel


def _require_agent(identity: str, config: ChatConfig) -> None:
    if identity != config.agent_identity:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the agent may do this")


def _check_customer_channel(channel_id: str, body: ChannelCreate, identity: str, config: ChatConfig) -> None:
    """A customer may only open its own support channel, with itself and the agent as members."""
    if channel_id != channel_id_for(identity):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Channel id does not belong to the caller")
    if set(body.members) != {identity, config.agent_identity}:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Members must be the caller and the agent")
    if body.data.customer_id != identity:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="customer_id must be the caller")
    if body.data.closed:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="A new channel cannot start closed")


@router.post("/query", response_model=List[Channel])
async def query_channels(
    query: ChannelQuery,
    identity: str = Depends(get_current_identity),
    registry: ChannelRegistry = Depends(get_registry),
):
    """
    List channels matching a filter, restricted to the caller's channels.
    """
    try:
        channels = await registry.list(query.filter, sort=query.sort)
    except ChatError as e:
        raise _http_error(e)

    visible = [c for c in channels if identity in c.members]
    return visible[:query.limit] if query.limit else visible


@router.get("/events")
async def stream_events(
    request: Request,
    identity: str = Depends(get_current_identity),
    registry: ChannelRegistry = Depends(get_registry),
):
    """
    Stream live events of the caller's channels as Server-Sent Events.
    """
    subscription = registry.subscribe(member=identity)
    logger.info(f"Event stream opened for {identity}")

    async def event_generator():
        try:
            while True:
                if await request.is_disconnected():
                    return
                try:
                    event = await subscription.get(timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                if event is None:
                    return
                yield f"event: {event.type.value}\ndata: {event.model_dump_json()}\n\n"
        finally:
            subscription.cancel()
            logger.info(f"Event stream closed for {identity}")

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        }
    )


@router.post("/{channel_id}", response_model=Channel)
async def create_or_join_channel(
    channel_id: str,
    body: ChannelCreate,
    identity: str = Depends(get_current_identity),
    registry: ChannelRegistry = Depends(get_registry),
    config: ChatConfig = Depends(get_chat_config),
):
    """
    Create a channel, or join it if it already exists.

    The caller becomes the creator and must be listed among the members.
    Customers may only open ``support-<own identity>``.
    """
    if identity != config.agent_identity:
        _check_customer_channel(channel_id, body, identity, config)
    try:
        return await registry.create_or_join(
            channel_id, members=body.members, metadata=body.data, created_by=identity
        )
    except ChatError as e:
        raise _http_error(e)


@router.get("/{channel_id}", response_model=Channel)
async def get_channel(
    channel_id: str,
    identity: str = Depends(get_current_identity),
    registry: ChannelRegistry = Depends(get_registry),
):
    return await _member_channel(registry, channel_id, identity)


@router.patch("/{channel_id}", response_model=Channel)
async def update_channel(
    channel_id: str,
    patch: ChannelPatch,
    identity: str = Depends(get_current_identity),
    registry: ChannelRegistry = Depends(get_registry),
    config: ChatConfig = Depends(get_chat_config),
):
    """
    Partially update channel metadata. Agent only.
    """
    _require_agent(identity, config)
    await _member_channel(registry, channel_id, identity)
    try:
        return await registry.update_metadata(channel_id, patch.set)
    except ChatError as e:
        raise _http_error(e)


@router.get("/{channel_id}/messages", response_model=List[ChatMessage])
async def list_messages(
    channel_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500),
    identity: str = Depends(get_current_identity),
    registry: ChannelRegistry = Depends(get_registry),
):
    await _member_channel(registry, channel_id, identity)
    try:
        return await registry.messages(channel_id, limit=limit)
    except ChatError as e:
        raise _http_error(e)


@router.post("/{channel_id}/messages", response_model=ChatMessage, status_code=status.HTTP_201_CREATED)
async def post_message(
    channel_id: str,
    body: MessageCreate,
    identity: str = Depends(get_current_identity),
    registry: ChannelRegistry = Depends(get_registry),
    config: ChatConfig = Depends(get_chat_config),
):
    """
    Post a message as the caller.

    Customers cannot post once the agent has closed the channel.
    """
    channel = await _member_channel(registry, channel_id, identity)
    if not channel.accepts_message_from(identity, config.agent_identity):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This chat has been closed by the sales associate.",
        )
    try:
        return await registry.send_message(channel_id, identity, body.text)
    except ChatError as e:
        raise _http_error(e)


@router.post("/{channel_id}/system-messages", response_model=ChatMessage, status_code=status.HTTP_201_CREATED)
async def post_system_message(
    channel_id: str,
    body: MessageCreate,
    identity: str = Depends(get_current_identity),
    registry: ChannelRegistry = Depends(get_registry),
    config: ChatConfig = Depends(get_chat_config),
):
    """
    Post a system-authored message. Agent only.
    """
    _require_agent(identity, config)
    await _member_channel(registry, channel_id, identity)
    try:
        return await registry.send_system_message(channel_id, body.text)
    except ChatError as e:
        raise _http_error(e)
