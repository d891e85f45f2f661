"""Configuration module."""

from .settings import ChatConfig, Settings, settings

__all__ = ['ChatConfig', 'Settings', 'settings']
