"""
Agent Console - sales associate side of the chat.

Lists open conversations assigned to the agent, keeps at most one of them
selected, and closes conversations with a terminal system notice.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, TypeVar

from .credentials import CredentialIssuer
from .errors import ChannelError, CredentialError
from .subscription import Subscription
from ..config import ChatConfig
from ..models import CHANNEL_TYPE, Channel, ChatMessage, EventType, MessageType, RegistryEvent
from ..registry.interface import ChannelRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLOSED_NOTICE = "This chat has been closed by the sales associate."
DEFAULT_SORT = {"last_message_at": -1}


def open_channels_filter(agent_identity: str) -> Dict[str, Any]:
    """Registry filter for open conversations the agent belongs to."""
    return {
        "members": {"$in": [agent_identity]},
        "type": CHANNEL_TYPE,
        "closed": False,
    }


class ConsoleState(str, Enum):
    NO_SELECTION = "no_selection"
    SELECTED = "selected"


class ActiveChannel:
    """The conversation currently shown in the console, with its live events."""

    def __init__(self, channel: Channel, registry: ChannelRegistry):
        self.channel = channel
        self._registry = registry
        self._events: Subscription[RegistryEvent] = registry.subscribe(channel_id=channel.id)

    @property
    def id(self) -> str:
        return self.channel.id

    @property
    def released(self) -> bool:
        return self._events.cancelled

    async def history(self, limit: Optional[int] = None) -> List[ChatMessage]:
        return await self._registry.messages(self.channel.id, limit=limit)

    async def messages(self) -> AsyncIterator[ChatMessage]:
        """New messages as they arrive; ends when the channel is released."""
        async for event in self._events:
            self.channel = event.channel
            if event.type == EventType.MESSAGE_NEW and event.message is not None:
                yield event.message

    def release(self) -> None:
        self._events.cancel()


class ChannelListing:
    """
    Live, restartable sequence of open-channel snapshots.

    Each ``async for`` subscribes afresh, yields the current snapshot, then a
    new snapshot whenever the registry pushes an event for one of the
    agent's channels. ``cancel`` ends the running iteration.
    """

    def __init__(self, console: "AgentConsole", agent_identity: str):
        self._console = console
        self.agent_identity = agent_identity
        self._subscription: Optional[Subscription[RegistryEvent]] = None

    async def refresh(self) -> List[Channel]:
        return await self._console.list_open_channels(self.agent_identity)

    def __aiter__(self) -> AsyncIterator[List[Channel]]:
        return self._snapshots()

    async def _snapshots(self) -> AsyncIterator[List[Channel]]:
        # Subscribe before the first query so nothing falls in between
        subscription = self._console.registry.subscribe(member=self.agent_identity)
        self._subscription = subscription
        try:
            yield await self.refresh()
            async for _ in subscription:
                yield await self.refresh()
        finally:
            subscription.cancel()
            if self._subscription is subscription:
                self._subscription = None

    def cancel(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()


class AgentConsole:
    """
    Console for the single well-known agent identity.

    States: ``no_selection`` and ``selected(channel)``; transitions are
    ``select_channel``, ``deselect`` and ``close_channel``.
    """

    def __init__(
        self,
        config: ChatConfig,
        registry: ChannelRegistry,
        issuer: Optional[CredentialIssuer] = None,
        agent_token: Optional[str] = None,
    ):
        self.config = config
        self.registry = registry
        self._issuer = issuer
        self._agent_token = agent_token
        self._active: Optional[ActiveChannel] = None
        # Closes run one at a time so the notice check and the announce never interleave
        self._close_lock = asyncio.Lock()

    @property
    def agent_identity(self) -> str:
        return self.config.agent_identity

    @property
    def state(self) -> ConsoleState:
        return ConsoleState.SELECTED if self._active is not None else ConsoleState.NO_SELECTION

    @property
    def active(self) -> Optional[ActiveChannel]:
        return self._active

    async def connect(self) -> None:
        """Connect the agent identity, issuing a token unless one was given."""
        token = self._agent_token
        if token is None:
            if self._issuer is None:
                raise CredentialError("No agent token and no issuer configured", identity=self.agent_identity)
            token = await self._issuer.issue_token(self.agent_identity)
        await self.registry.connect_user(self.agent_identity, token, "Sales Associate")
        logger.info(f"Agent console connected as {self.agent_identity}")

    async def disconnect(self) -> None:
        self.deselect()
        await self.registry.disconnect_user(self.agent_identity)

    async def _call(self, action: str, channel_id: str, call: Awaitable[T]) -> T:
        """Await a registry call, surfacing any failure as ChannelError."""
        try:
            return await call
        except ChannelError:
            raise
        except Exception as e:
            logger.error(f"{action} failed for {channel_id}: {e}")
            raise ChannelError(f"{action} failed: {e}", channel_id=channel_id) from e

    async def list_open_channels(self, agent_identity: Optional[str] = None) -> List[Channel]:
        """Open conversations of the agent, most recent activity first."""
        agent = agent_identity or self.agent_identity
        channels = await self.registry.list(open_channels_filter(agent), sort=DEFAULT_SORT)
        # Re-check locally so a lagging backend can never leak closed channels
        return [c for c in channels if not c.closed and agent in c.members]

    def watch_open_channels(self, agent_identity: Optional[str] = None) -> ChannelListing:
        return ChannelListing(self, agent_identity or self.agent_identity)

    def select_channel(self, channel: Channel) -> ActiveChannel:
        """Show a conversation, replacing any current selection."""
        if self.agent_identity not in channel.members:
            raise ChannelError(f"{self.agent_identity} is not a member of {channel.id}", channel_id=channel.id)
        if self._active is not None:
            if self._active.id == channel.id:
                return self._active
            self._active.release()
        self._active = ActiveChannel(channel, self.registry)
        logger.debug(f"Selected channel {channel.id}")
        return self._active

    def deselect(self) -> None:
        if self._active is not None:
            self._active.release()
            self._active = None

    async def send_message(self, text: str) -> ChatMessage:
        """Reply on the active conversation."""
        if self._active is None:
            raise ChannelError("No channel selected")
        channel_id = self._active.id
        return await self._call(
            "Send message", channel_id,
            self.registry.send_message(channel_id, self.agent_identity, text),
        )

    async def _has_close_notice(self, channel_id: str) -> bool:
        messages = await self._call("Load messages", channel_id, self.registry.messages(channel_id))
        return any(m.type == MessageType.SYSTEM and m.text == CLOSED_NOTICE for m in messages)

    async def close_channel(self, channel: Optional[Channel] = None) -> bool:
        """
        Close a conversation: mark it closed, announce it, deselect it.

        Defaults to the active channel. The two registry calls are not
        transactional; a failure in either raises ChannelError and keeps the
        selection so the agent can retry. A retry after a half-done close
        only posts the missing notice. Concurrent calls are serialised, so a
        double-clicked close still appends a single notice.

        Returns:
            bool: False if the channel was already fully closed (no-op)
        """
        if channel is None:
            if self._active is None:
                raise ChannelError("No channel selected")
            channel = self._active.channel
        channel_id = channel.id

        async with self._close_lock:
            current = await self._call("Fetch channel", channel_id, self.registry.get(channel_id))
            if current.closed and await self._has_close_notice(channel_id):
                logger.info(f"Channel {channel_id} already closed")
                return False

            if not current.closed:
                await self._call(
                    "Close channel", channel_id,
                    self.registry.update_metadata(channel_id, {"closed": True}),
                )
            await self._call(
                "Announce closure", channel_id,
                self.registry.send_system_message(channel_id, CLOSED_NOTICE),
            )

            if self._active is not None and self._active.id == channel_id:
                self.deselect()
        logger.info(f"Channel {channel_id} closed by {self.agent_identity}")
        return True

    @staticmethod
    def product_info(channel: Channel) -> Dict[str, str]:
        """Customer/product context shown next to the conversation."""
        data = channel.data
        return {
            "customer": data.customer_name or "Customer",
            "url": data.url or "N/A",
            "sku": data.sku or "N/A",
            "product": data.product.name if data.product else "N/A",
        }
