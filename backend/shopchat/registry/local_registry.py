"""
Local Channel Registry - file-backed registry with in-process event fan-out.

Channels are stored as ``channels/<id>.json`` and messages as JSON lines in
``messages/<id>.jsonl`` through a StorageInterface.
"""

import asyncio
import logging
import re
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from .interface import ChannelRegistry
from .query import query_channels
from ..core.errors import ChannelError, ChannelNotFoundError, CredentialError, TransportError
from ..core.subscription import Subscription
from ..core.logging_config import mask_token
from ..models import (
    CHANNEL_TYPE, IMMUTABLE_FIELDS, Channel, ChannelMetadata, ChatMessage,
    EventType, MessageType, RegistryEvent,
)
from ..storage import StorageInterface
from ..utils.auth import TokenSigner

logger = logging.getLogger(__name__)

_CHANNEL_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-]{1,128}$")


class LocalChannelRegistry(ChannelRegistry):
    """
    Channel registry persisted through local storage.

    Writes to one channel are serialised by its channel lock; concurrent
    metadata patches resolve last-writer-wins.
    """

    def __init__(
        self,
        storage: StorageInterface,
        signer: Optional[TokenSigner] = None,
        enforce_connections: bool = True,
        message_cache_size: int = 256,
        lock_stripes: int = 64,
    ):
        """
        Args:
            storage: Where channels and messages are persisted
            signer: Verifies tokens on connect; tokens are not checked if None
            enforce_connections: Require a live connection to create channels
                and post messages. The HTTP layer turns this off because every
                request carries its own bearer token.
            message_cache_size: Channels whose message history is kept in
                memory; older histories are reloaded from storage on demand
            lock_stripes: Size of the fixed lock pool channels hash into
        """
        self.storage = storage
        self._signer = signer
        self._enforce_connections = enforce_connections
        self._channels: Dict[str, Channel] = {}
        self._messages: "OrderedDict[str, List[ChatMessage]]" = OrderedDict()
        self._message_cache_size = max(1, message_cache_size)
        self._connections: Dict[str, Optional[str]] = {}
        # Fixed pool so memory stays flat however many channels are touched
        self._locks: List[asyncio.Lock] = [asyncio.Lock() for _ in range(max(1, lock_stripes))]
        # subscription -> (channel_id scope, member scope)
        self._subscribers: Dict[Subscription, Tuple[Optional[str], Optional[str]]] = {}
        self._loaded = False
        self._load_lock = asyncio.Lock()

    # ----- persistence -----

    @staticmethod
    def _channel_path(channel_id: str) -> str:
        return f"channels/{channel_id}.json"

    @staticmethod
    def _messages_path(channel_id: str) -> str:
        return f"messages/{channel_id}.jsonl"

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        async with self._load_lock:
            if self._loaded:
                return
            for path in await self.storage.list("channels", pattern="*.json"):
                content = await self.storage.load(path)
                if content is None:
                    continue
                try:
                    channel = Channel.model_validate_json(content)
                except ValidationError as e:
                    logger.warning(f"Skipping unreadable channel record {path}: {e}")
                    continue
                self._channels[channel.id] = channel
            self._loaded = True
            logger.info(f"Channel registry loaded {len(self._channels)} channels")

    async def _persist_channel(self, channel: Channel) -> None:
        ok = await self.storage.save(self._channel_path(channel.id), channel.model_dump_json(indent=2))
        if not ok:
            raise ChannelError(f"Failed to persist channel {channel.id}", channel_id=channel.id)

    async def _load_messages(self, channel_id: str) -> List[ChatMessage]:
        if channel_id in self._messages:
            self._messages.move_to_end(channel_id)
            return self._messages[channel_id]

        messages: List[ChatMessage] = []
        content = await self.storage.load(self._messages_path(channel_id))
        if content:
            for line in content.decode("utf-8").splitlines():
                if not line.strip():
                    continue
                try:
                    messages.append(ChatMessage.model_validate_json(line))
                except ValidationError as e:
                    logger.warning(f"Skipping unreadable message in {channel_id}: {e}")
        self._cache_messages(channel_id, messages)
        return messages

    def _cache_messages(self, channel_id: str, messages: List[ChatMessage]) -> None:
        self._messages[channel_id] = messages
        self._messages.move_to_end(channel_id)
        while len(self._messages) > self._message_cache_size:
            self._messages.popitem(last=False)

    def _lock_for(self, channel_id: str) -> asyncio.Lock:
        return self._locks[hash(channel_id) % len(self._locks)]

    def _require(self, channel_id: str) -> Channel:
        channel = self._channels.get(channel_id)
        if channel is None:
            raise ChannelNotFoundError(f"Channel {channel_id} not found", channel_id=channel_id)
        return channel

    def _require_connection(self, identity: str) -> None:
        if self._enforce_connections and identity not in self._connections:
            raise TransportError(f"{identity} is not connected", identity=identity)

    # ----- events -----

    def _publish(self, event_type: EventType, channel: Channel, message: Optional[ChatMessage] = None) -> None:
        event = RegistryEvent(
            type=event_type,
            channel_id=channel.id,
            channel=channel.model_copy(deep=True),
            message=message,
        )
        for subscription, (channel_id, member) in list(self._subscribers.items()):
            if channel_id is not None and channel_id != channel.id:
                continue
            if member is not None and member not in channel.members:
                continue
            subscription.put(event)

    def subscribe(
        self,
        channel_id: Optional[str] = None,
        member: Optional[str] = None,
    ) -> Subscription[RegistryEvent]:
        subscription: Subscription[RegistryEvent] = Subscription(
            on_cancel=lambda sub: self._subscribers.pop(sub, None)
        )
        self._subscribers[subscription] = (channel_id, member)
        return subscription

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ----- connections -----

    async def connect_user(self, identity: str, token: str, name: Optional[str] = None) -> None:
        if not identity:
            raise TransportError("Cannot connect an empty identity")
        if self._signer is not None:
            token_data = self._signer.decode_token(token)
            if token_data is None or token_data.user_id != identity:
                logger.warning(f"Rejected token {mask_token(token)} for {identity}")
                raise CredentialError("Token is not valid for this identity", identity=identity)
        self._connections[identity] = name
        logger.info(f"User connected: {identity}")

    async def disconnect_user(self, identity: str) -> None:
        if identity in self._connections:
            del self._connections[identity]
            logger.info(f"User disconnected: {identity}")

    def is_connected(self, identity: str) -> bool:
        return identity in self._connections

    # ----- channels -----

    async def create_or_join(
        self,
        channel_id: str,
        members: List[str],
        metadata: ChannelMetadata,
        created_by: str,
    ) -> Channel:
        if not _CHANNEL_ID_PATTERN.match(channel_id or ""):
            raise ChannelError(f"Invalid channel id: {channel_id!r}", channel_id=channel_id)
        self._require_connection(created_by)
        await self._ensure_loaded()

        async with self._lock_for(channel_id):
            existing = self._channels.get(channel_id)
            if existing is not None:
                if created_by not in existing.members:
                    raise ChannelError(
                        f"{created_by} is not a member of {channel_id}", channel_id=channel_id
                    )
                logger.info(f"Joined existing channel {channel_id}")
                return existing.model_copy(deep=True)

            unique_members = list(dict.fromkeys(m for m in members if m))
            if created_by not in unique_members:
                raise ChannelError(
                    f"Creator {created_by} must be a member of {channel_id}", channel_id=channel_id
                )

            channel = Channel(
                id=channel_id,
                type=CHANNEL_TYPE,
                members=unique_members,
                data=metadata,
                created_by=created_by,
            )
            await self._persist_channel(channel)
            self._channels[channel_id] = channel
            self._cache_messages(channel_id, [])
            logger.info(f"Created channel {channel_id} with members {unique_members}")

        self._publish(EventType.CHANNEL_CREATED, channel)
        return channel.model_copy(deep=True)

    async def get(self, channel_id: str) -> Channel:
        await self._ensure_loaded()
        return self._require(channel_id).model_copy(deep=True)

    async def list(
        self,
        filter: Dict[str, Any],
        sort: Optional[Dict[str, int]] = None,
        limit: Optional[int] = None,
    ) -> List[Channel]:
        await self._ensure_loaded()
        result = query_channels(self._channels.values(), filter, sort, limit)
        return [c.model_copy(deep=True) for c in result]

    async def update_metadata(self, channel_id: str, patch: Dict[str, Any]) -> Channel:
        await self._ensure_loaded()

        async with self._lock_for(channel_id):
            channel = self._require(channel_id)

            unknown = set(patch) - set(ChannelMetadata.model_fields)
            if unknown:
                raise ChannelError(f"Unknown metadata fields: {sorted(unknown)}", channel_id=channel_id)
            frozen = set(patch) & IMMUTABLE_FIELDS
            if frozen:
                raise ChannelError(f"Metadata fields are read-only: {sorted(frozen)}", channel_id=channel_id)
            if channel.data.closed and patch.get("closed", True) is not True:
                raise ChannelError(f"Channel {channel_id} is closed and cannot be reopened", channel_id=channel_id)

            try:
                data = ChannelMetadata.model_validate({**channel.data.model_dump(), **patch})
            except ValidationError as e:
                raise ChannelError(f"Invalid metadata patch: {e}", channel_id=channel_id) from e

            updated = channel.model_copy(update={"data": data, "updated_at": datetime.now(timezone.utc)})
            await self._persist_channel(updated)
            self._channels[channel_id] = updated
            logger.info(f"Updated channel {channel_id} metadata: {sorted(patch)}")

        self._publish(EventType.CHANNEL_UPDATED, updated)
        return updated.model_copy(deep=True)

    # ----- messages -----

    async def _append_message(
        self,
        channel_id: str,
        text: str,
        user_id: Optional[str],
        message_type: MessageType,
    ) -> ChatMessage:
        if not text or not text.strip():
            raise ChannelError("Message text is empty", channel_id=channel_id)
        await self._ensure_loaded()

        async with self._lock_for(channel_id):
            channel = self._require(channel_id)
            if user_id is not None and user_id not in channel.members:
                raise ChannelError(f"{user_id} is not a member of {channel_id}", channel_id=channel_id)

            message = ChatMessage(
                id=uuid.uuid4().hex,
                channel_id=channel_id,
                user_id=user_id,
                text=text,
                type=message_type,
            )
            messages = await self._load_messages(channel_id)
            ok = await self.storage.append(self._messages_path(channel_id), message.model_dump_json() + "\n")
            if not ok:
                raise ChannelError(f"Failed to store message in {channel_id}", channel_id=channel_id)
            messages.append(message)

            updated = channel.model_copy(update={"last_message_at": message.created_at})
            await self._persist_channel(updated)
            self._channels[channel_id] = updated

        self._publish(EventType.MESSAGE_NEW, updated, message)
        return message

    async def send_message(self, channel_id: str, user_id: str, text: str) -> ChatMessage:
        self._require_connection(user_id)
        return await self._append_message(channel_id, text, user_id, MessageType.REGULAR)

    async def send_system_message(self, channel_id: str, text: str) -> ChatMessage:
        return await self._append_message(channel_id, text, None, MessageType.SYSTEM)

    async def messages(self, channel_id: str, limit: Optional[int] = None) -> List[ChatMessage]:
        await self._ensure_loaded()
        self._require(channel_id)
        # Loads share the write lock so a reload never caches a half-written history
        async with self._lock_for(channel_id):
            messages = await self._load_messages(channel_id)
            selected = messages[-limit:] if limit else messages
            return [m.model_copy() for m in selected]

    async def close(self) -> None:
        for subscription in list(self._subscribers):
            subscription.cancel()
        self._connections.clear()
