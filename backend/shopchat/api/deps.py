"""
Shared API dependencies - the registry instance and the chat configuration.
"""

from typing import Optional

from ..config import ChatConfig, settings
from ..registry import ChannelRegistry, LocalChannelRegistry
from ..storage import LocalStorage
from ..utils.auth import get_token_signer

# Global registry instance
_registry: Optional[ChannelRegistry] = None


def init_registry(registry: Optional[ChannelRegistry] = None) -> ChannelRegistry:
    """
    Initialize the global channel registry.

    Args:
        registry: Optional registry to install. If None, creates a
            LocalChannelRegistry on the configured storage path.
    """
    global _registry
    if registry is None:
        registry = LocalChannelRegistry(
            LocalStorage(settings.local_storage_path),
            signer=get_token_signer(),
            enforce_connections=False,
        )
    _registry = registry
    return registry


def get_registry() -> ChannelRegistry:
    """Get the global channel registry, creating it on first use."""
    if _registry is None:
        return init_registry()
    return _registry


def get_chat_config() -> ChatConfig:
    return settings.chat_config()
