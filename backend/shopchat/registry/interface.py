"""
Channel Registry Interface - contract of the messaging backend.

The registry owns channels, their members, metadata and messages, and pushes
live events to subscribers. Session manager and agent console only ever talk
to it through this interface.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..core.subscription import Subscription
from ..models import Channel, ChannelMetadata, ChatMessage, RegistryEvent


class ChannelRegistry(ABC):
    """Abstract channel registry and transport."""

    @abstractmethod
    async def connect_user(self, identity: str, token: str, name: Optional[str] = None) -> None:
        """
        Open a transport connection for an identity.

        Raises:
            CredentialError: If the token does not belong to the identity
            TransportError: If the backend cannot be reached
        """
        pass

    @abstractmethod
    async def disconnect_user(self, identity: str) -> None:
        """Release the transport connection for an identity. Idempotent."""
        pass

    @abstractmethod
    def is_connected(self, identity: str) -> bool:
        pass

    @abstractmethod
    async def create_or_join(
        self,
        channel_id: str,
        members: List[str],
        metadata: ChannelMetadata,
        created_by: str,
    ) -> Channel:
        """
        Create a channel, or join it if the id is already taken.

        Joining never overwrites metadata or members set by an earlier party.

        Raises:
            ChannelError: If creation fails or the caller is not a member
        """
        pass

    @abstractmethod
    async def get(self, channel_id: str) -> Channel:
        """
        Fetch the current state of a channel.

        Raises:
            ChannelNotFoundError: If no such channel exists
        """
        pass

    @abstractmethod
    async def list(
        self,
        filter: Dict[str, Any],
        sort: Optional[Dict[str, int]] = None,
        limit: Optional[int] = None,
    ) -> List[Channel]:
        """Query channels matching a filter, in sort order."""
        pass

    @abstractmethod
    async def update_metadata(self, channel_id: str, patch: Dict[str, Any]) -> Channel:
        """
        Partially update channel metadata.

        Raises:
            ChannelError: If the patch touches immutable fields or reopens a closed channel
        """
        pass

    @abstractmethod
    async def send_message(self, channel_id: str, user_id: str, text: str) -> ChatMessage:
        """
        Post a user-authored message.

        Raises:
            ChannelError: If the channel is missing or the user is not a member
            TransportError: If the user has no live connection
        """
        pass

    @abstractmethod
    async def send_system_message(self, channel_id: str, text: str) -> ChatMessage:
        """Post a system-authored message."""
        pass

    @abstractmethod
    async def messages(self, channel_id: str, limit: Optional[int] = None) -> List[ChatMessage]:
        """Messages of a channel, oldest first; the newest ``limit`` if given."""
        pass

    @abstractmethod
    def subscribe(
        self,
        channel_id: Optional[str] = None,
        member: Optional[str] = None,
    ) -> Subscription[RegistryEvent]:
        """
        Subscribe to live events.

        Args:
            channel_id: Only events of this channel
            member: Only events of channels this identity belongs to
        """
        pass

    async def close(self) -> None:
        """Release backend resources."""
        pass
