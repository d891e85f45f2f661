"""
Token Models - Credential issuance payloads.
"""

from typing import Optional
from pydantic import BaseModel, Field


class TokenRequest(BaseModel):
    """Token request as sent by the chat widget."""
    userId: Optional[str] = None


class TokenResponse(BaseModel):
    """Token issued for exactly one identity."""
    token: str


class TokenData(BaseModel):
    """Token payload data."""
    user_id: str = Field(..., min_length=1)
