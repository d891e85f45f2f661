"""Models module."""

from .channel import (
    CHANNEL_NAME, CHANNEL_PREFIX, CHANNEL_TYPE, IMMUTABLE_FIELDS,
    Channel, ChannelCreate, ChannelMetadata, ChannelPatch, ChannelQuery,
    ChatMessage, EventType, MessageCreate, MessageType, ProductRef,
    ProductSummary, RegistryEvent, channel_id_for,
)
from .token import TokenData, TokenRequest, TokenResponse

__all__ = [
    'CHANNEL_NAME', 'CHANNEL_PREFIX', 'CHANNEL_TYPE', 'IMMUTABLE_FIELDS',
    'Channel', 'ChannelCreate', 'ChannelMetadata', 'ChannelPatch', 'ChannelQuery',
    'ChatMessage', 'EventType', 'MessageCreate', 'MessageType', 'ProductRef',
    'ProductSummary', 'RegistryEvent', 'channel_id_for',
    'TokenData', 'TokenRequest', 'TokenResponse',
]
