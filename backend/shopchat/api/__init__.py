"""API module."""

from .token import router as token_router
from .channels import router as channels_router

__all__ = ['token_router', 'channels_router']
