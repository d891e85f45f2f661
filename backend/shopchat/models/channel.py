"""
Channel Models - Support channels, their metadata, and messages.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

CHANNEL_TYPE = "messaging"
CHANNEL_PREFIX = "support-"
CHANNEL_NAME = "Sales Support"

# Set once at creation, never patched afterwards
IMMUTABLE_FIELDS = frozenset({"url", "sku", "product", "customer_id"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def channel_id_for(identity: str) -> str:
    """Deterministic channel id for a session identity."""
    return f"{CHANNEL_PREFIX}{identity}"


class ProductRef(BaseModel):
    """Product the customer was looking at when opening the chat."""
    sku: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)


class ProductSummary(BaseModel):
    """Product as embedded in channel metadata."""
    name: str
    price: float


class ChannelMetadata(BaseModel):
    """Custom data carried by a support channel."""
    name: str = CHANNEL_NAME
    url: Optional[str] = None
    sku: Optional[str] = None
    product: Optional[ProductSummary] = None
    customer_name: Optional[str] = None
    customer_id: Optional[str] = None
    closed: bool = False

    @classmethod
    def for_session(
        cls,
        identity: str,
        product: ProductRef,
        customer_name: str,
        url: Optional[str] = None,
    ) -> "ChannelMetadata":
        return cls(
            url=url,
            sku=product.sku,
            product=ProductSummary(name=product.name, price=product.price),
            customer_name=customer_name,
            customer_id=identity,
        )


class Channel(BaseModel):
    """A conversation between one customer identity and the agent."""
    id: str
    type: str = CHANNEL_TYPE
    members: List[str]
    data: ChannelMetadata = Field(default_factory=ChannelMetadata)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    last_message_at: Optional[datetime] = None

    @property
    def closed(self) -> bool:
        return self.data.closed

    @property
    def activity_at(self) -> datetime:
        """Most recent activity, used for ordering listings."""
        return self.last_message_at or self.created_at

    def accepts_message_from(self, user_id: str, agent_identity: str) -> bool:
        """Closed channels only take messages from the agent."""
        return not self.data.closed or user_id == agent_identity


class MessageType(str, Enum):
    REGULAR = "regular"
    SYSTEM = "system"


class ChatMessage(BaseModel):
    """A message posted to a channel."""
    id: str
    channel_id: str
    user_id: Optional[str] = None  # None for system messages
    text: str
    type: MessageType = MessageType.REGULAR
    created_at: datetime = Field(default_factory=_utcnow)


class EventType(str, Enum):
    CHANNEL_CREATED = "channel.created"
    CHANNEL_UPDATED = "channel.updated"
    MESSAGE_NEW = "message.new"


class RegistryEvent(BaseModel):
    """Live update pushed to subscribers."""
    type: EventType
    channel_id: str
    channel: Channel
    message: Optional[ChatMessage] = None


class ChannelQuery(BaseModel):
    """Body of a channel listing request."""
    filter: Dict[str, Any] = Field(default_factory=dict)
    sort: Dict[str, int] = Field(default_factory=lambda: {"last_message_at": -1})
    limit: Optional[int] = Field(None, ge=1, le=100)


class ChannelCreate(BaseModel):
    """Body of a create-or-join request."""
    members: List[str]
    data: ChannelMetadata


class ChannelPatch(BaseModel):
    """Body of a partial metadata update."""
    set: Dict[str, Any]


class MessageCreate(BaseModel):
    """Body of a message post."""
    text: str = Field(..., min_length=1)
