"""
Error taxonomy for the chat session lifecycle.

Every error here is recoverable by a user-initiated retry; none of them
should take the surrounding application down.
"""

from typing import Optional


class ChatError(Exception):
    """Base class for all chat lifecycle errors."""


class CredentialError(ChatError):
    """Token issuance failed (bad identity, issuer unreachable, issuer fault)."""

    def __init__(self, message: str, identity: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.identity = identity
        self.status_code = status_code


class ChannelError(ChatError):
    """Channel create/join/update failed."""

    def __init__(self, message: str, channel_id: Optional[str] = None):
        super().__init__(message)
        self.channel_id = channel_id


class ChannelNotFoundError(ChannelError):
    """No channel is registered under the requested id."""


class ChannelClosedError(ChannelError):
    """A customer tried to post to a channel the agent has closed."""


class TransportError(ChatError):
    """The identity has no live connection to the messaging backend."""

    def __init__(self, message: str, identity: Optional[str] = None):
        super().__init__(message)
        self.identity = identity


class SessionCancelledError(ChatError):
    """The widget was deactivated before the session finished starting."""

    def __init__(self, identity: Optional[str] = None):
        label = f"Session {identity}" if identity else "Session"
        super().__init__(f"{label} was cancelled before it was established")
        self.identity = identity
