"""
Credential issuance endpoint used by the chat widget and the agent console.
"""

import hmac
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from ..config import ChatConfig, settings
from ..models import TokenRequest, TokenResponse
from ..utils.auth import TokenSigner, get_token_signer
from .deps import get_chat_config

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["credentials"])


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


@router.post("/stream-token", response_model=TokenResponse)
async def issue_stream_token(
    body: TokenRequest,
    x_admin_key: Optional[str] = Header(None),
    signer: TokenSigner = Depends(get_token_signer),
    config: ChatConfig = Depends(get_chat_config),
):
    """
    Issue a token scoped to one identity.

    Anonymous customers may only ask for tokens for random UUID identities.
    The agent identity additionally requires the admin key.

    Returns:
        TokenResponse: Signed token

    Raises:
        HTTPException: 400 on a missing or malformed identity, 403 for the
            agent identity without the admin key, 500 on signing failure
    """
    identity = (body.userId or "").strip()
    if not identity:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing userId")

    if identity == config.agent_identity:
        admin_key = settings.admin_api_key
        if not admin_key or not x_admin_key or not hmac.compare_digest(admin_key, x_admin_key):
            logger.warning("Rejected token request for the agent identity")
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to act as the agent")
    elif not _is_uuid(identity):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid userId")

    try:
        token = signer.create_token(identity)
    except Exception as e:
        logger.error(f"Token signing failed: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    logger.info(f"Issued token for {identity}")
    return TokenResponse(token=token)
