"""Core module - chat session lifecycle and the errors it raises."""

from .errors import (
    ChatError, CredentialError, ChannelError, ChannelNotFoundError,
    ChannelClosedError, TransportError, SessionCancelledError,
)
from .subscription import Subscription

__all__ = [
    'ChatError', 'CredentialError', 'ChannelError', 'ChannelNotFoundError',
    'ChannelClosedError', 'TransportError', 'SessionCancelledError', 'Subscription',
]
