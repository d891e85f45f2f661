"""Registry module - channel registry contract and its implementations."""

from .interface import ChannelRegistry
from .local_registry import LocalChannelRegistry
from .http_registry import HttpChannelRegistry

__all__ = ['ChannelRegistry', 'LocalChannelRegistry', 'HttpChannelRegistry']
