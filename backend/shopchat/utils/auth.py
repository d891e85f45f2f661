"""
Authentication utilities - identity token signing and verification.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..models import TokenData

# Bearer token security
security = HTTPBearer()


class TokenSigner:
    """
    Signs and verifies tokens scoped to exactly one identity.

    The secret never leaves the server; clients only ever see signed tokens.
    """

    def __init__(self, secret: str, algorithm: str = "HS256", expire_minutes: Optional[int] = None):
        if not secret:
            raise ValueError("Token signing secret is not configured")
        self._secret = secret
        self.algorithm = algorithm
        self.expire_minutes = expire_minutes

    def create_token(self, identity: str, expires_delta: Optional[timedelta] = None) -> str:
        """
        Create a JWT for an identity.

        Args:
            identity: User identity the token is scoped to
            expires_delta: Optional expiration override

        Returns:
            str: Encoded JWT token
        """
        if not identity:
            raise ValueError("Cannot sign a token for an empty identity")

        now = datetime.now(timezone.utc)
        to_encode = {"user_id": identity, "iat": now}

        if expires_delta is None and self.expire_minutes:
            expires_delta = timedelta(minutes=self.expire_minutes)
        if expires_delta is not None:
            to_encode["exp"] = now + expires_delta

        return jwt.encode(to_encode, self._secret, algorithm=self.algorithm)

    def decode_token(self, token: str) -> Optional[TokenData]:
        """
        Decode and verify a token.

        Returns:
            Optional[TokenData]: Token data if valid, None otherwise
        """
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self.algorithm])
        except JWTError:
            return None

        user_id = payload.get("user_id")
        if not user_id:
            return None
        return TokenData(user_id=user_id)


# Global signer instance
_token_signer: Optional[TokenSigner] = None


def init_token_signer(signer: Optional[TokenSigner] = None) -> TokenSigner:
    """Initialize the global token signer, from settings unless one is given."""
    global _token_signer
    if signer is None:
        from ..config import settings
        signer = TokenSigner(
            settings.stream_api_secret,
            algorithm=settings.token_algorithm,
            expire_minutes=settings.token_expire_minutes,
        )
    _token_signer = signer
    return signer


def get_token_signer() -> TokenSigner:
    """Get the global token signer, creating it on first use."""
    if _token_signer is None:
        return init_token_signer()
    return _token_signer


async def get_current_identity(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    signer: TokenSigner = Depends(get_token_signer),
) -> str:
    """
    Dependency to get the caller's identity from a bearer token.

    Raises:
        HTTPException: If token is invalid
    """
    token_data = signer.decode_token(credentials.credentials)

    if token_data is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return token_data.user_id
