"""
Session Manager - customer side of the chat widget.

Each widget activation gets a fresh anonymous identity, a token for it, and
a support channel keyed by that identity. Deactivation releases the
connection but leaves the channel in place for the agent.
"""

import asyncio
import logging
import uuid
from typing import Optional

from .credentials import CredentialIssuer
from .errors import ChannelClosedError, ChannelError, ChatError, SessionCancelledError, TransportError
from .logging_config import mask_token
from .subscription import Subscription
from ..config import ChatConfig
from ..models import Channel, ChannelMetadata, ChatMessage, ProductRef, RegistryEvent, channel_id_for
from ..registry.interface import ChannelRegistry

logger = logging.getLogger(__name__)

GUEST_NAME = "Guest"


def generate_identity() -> str:
    """Random 128-bit identity for one widget lifecycle."""
    return str(uuid.uuid4())


class SessionHandle:
    """A connected customer session and, once opened, its channel."""

    def __init__(
        self,
        identity: str,
        token: str,
        display_name: str,
        product: ProductRef,
        registry: ChannelRegistry,
        config: ChatConfig,
    ):
        self.identity = identity
        self.token = token
        self.display_name = display_name
        self.product = product
        self.channel: Optional[Channel] = None
        self._registry = registry
        self._config = config

    def __repr__(self) -> str:
        return f"SessionHandle(identity={self.identity!r}, display_name={self.display_name!r})"

    @property
    def channel_id(self) -> str:
        return channel_id_for(self.identity)

    async def refresh(self) -> Channel:
        """Reload the channel so a close made by the agent is seen."""
        self.channel = await self._registry.get(self.channel_id)
        return self.channel

    async def is_closed(self) -> bool:
        return (await self.refresh()).closed

    async def send_message(self, text: str) -> ChatMessage:
        """
        Post a customer message.

        Raises:
            ChannelClosedError: If the agent has closed the conversation
            ChannelError: If the channel was never opened
        """
        if self.channel is None:
            raise ChannelError("Channel has not been opened yet", channel_id=self.channel_id)

        channel = await self.refresh()
        if not channel.accepts_message_from(self.identity, self._config.agent_identity):
            raise ChannelClosedError(
                "This chat has been closed by the sales associate.", channel_id=channel.id
            )
        return await self._registry.send_message(channel.id, self.identity, text)

    def events(self) -> Subscription[RegistryEvent]:
        """Live events for this session's channel; cancel when done."""
        return self._registry.subscribe(channel_id=self.channel_id)


class SessionManager:
    """
    Drives one chat widget's session lifecycle.

    States: idle -> starting -> active -> idle. ``deactivate`` from any state
    returns to idle and discards whatever the in-flight steps produce.
    """

    def __init__(self, config: ChatConfig, issuer: CredentialIssuer, registry: ChannelRegistry):
        self.config = config
        self._issuer = issuer
        self._registry = registry
        self._session: Optional[SessionHandle] = None
        self._pending: Optional[asyncio.Task] = None
        # Bumped on every deactivation; late results from older generations are discarded
        self._generation = 0

    @property
    def current(self) -> Optional[SessionHandle]:
        return self._session

    async def start_session(self, display_name: Optional[str], product: ProductRef) -> SessionHandle:
        """
        Allocate an identity, obtain a token for it, and connect.

        Raises:
            CredentialError: If the token could not be issued
            SessionCancelledError: If the widget was deactivated meanwhile
        """
        identity = generate_identity()
        name = (display_name or "").strip() or GUEST_NAME
        generation = self._generation
        logger.info(f"Starting chat session {identity} for product {product.sku}")

        token = await self._issuer.issue_token(identity)
        if generation != self._generation:
            logger.info(f"Discarding credential for cancelled session {identity}")
            raise SessionCancelledError(identity)
        logger.debug(f"Issued token {mask_token(token)} for session {identity}")

        connected = False
        try:
            await self._registry.connect_user(identity, token, name)
            connected = True
            if generation != self._generation:
                raise SessionCancelledError(identity)
        except BaseException:
            if connected:
                await self._registry.disconnect_user(identity)
            raise

        previous = self._session
        if previous is not None:
            await self._registry.disconnect_user(previous.identity)

        self._session = SessionHandle(identity, token, name, product, self._registry, self.config)
        return self._session

    async def open_channel(
        self,
        identity: str,
        product: ProductRef,
        display_name: Optional[str],
        referring_url: Optional[str] = None,
    ) -> Channel:
        """
        Create or join the support channel for a connected identity.

        Idempotent: joining an existing channel keeps whatever metadata the
        first party set.

        Raises:
            TransportError: If the identity has no live session
            ChannelError: If the registry refuses or fails
        """
        session = self._session
        if session is None or session.identity != identity or not self._registry.is_connected(identity):
            raise TransportError(f"No live session for {identity}", identity=identity)

        generation = self._generation
        name = (display_name or "").strip() or GUEST_NAME
        metadata = ChannelMetadata.for_session(identity, product, name, url=referring_url)
        channel_id = channel_id_for(identity)

        try:
            channel = await self._registry.create_or_join(
                channel_id,
                members=[identity, self.config.agent_identity],
                metadata=metadata,
                created_by=identity,
            )
        except ChatError:
            raise
        except Exception as e:
            logger.error(f"Failed to open channel {channel_id}: {e}")
            raise ChannelError(f"Failed to open channel: {e}", channel_id=channel_id) from e

        if generation != self._generation:
            raise SessionCancelledError(identity)

        session.channel = channel
        logger.info(f"Session {identity} joined channel {channel_id}")
        return channel

    async def activate(
        self,
        display_name: Optional[str],
        product: ProductRef,
        referring_url: Optional[str] = None,
    ) -> SessionHandle:
        """
        Full widget activation: token issuance strictly before channel join.

        A previous session, if any, is torn down first. ``deactivate`` while
        this is pending cancels it and raises ``SessionCancelledError`` here.
        """
        if self._session is not None or self._pending is not None:
            await self.deactivate()

        generation = self._generation

        async def _establish() -> SessionHandle:
            session = await self.start_session(display_name, product)
            await self.open_channel(session.identity, product, display_name, referring_url)
            return session

        task = asyncio.ensure_future(_establish())
        self._pending = task
        try:
            return await task
        except asyncio.CancelledError:
            if task.cancelled() and generation != self._generation:
                raise SessionCancelledError() from None
            raise
        finally:
            if self._pending is task:
                self._pending = None

    async def deactivate(self) -> None:
        """
        Tear the widget down: cancel pending work and release the connection.

        The channel itself is left untouched.
        """
        self._generation += 1

        pending, self._pending = self._pending, None
        if pending is not None and not pending.done():
            pending.cancel()

        session, self._session = self._session, None
        if session is not None:
            await self._registry.disconnect_user(session.identity)
            logger.info(f"Session {session.identity} deactivated")
