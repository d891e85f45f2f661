"""
Credential issuers - exchange a session identity for an access token.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from .errors import CredentialError
from ..utils.auth import TokenSigner

logger = logging.getLogger(__name__)


class CredentialIssuer(ABC):
    """Issues tokens scoped to exactly one identity."""

    @abstractmethod
    async def issue_token(self, identity: str) -> str:
        """
        Issue a token for an identity.

        Raises:
            CredentialError: If the identity is invalid or issuance fails
        """
        pass


class LocalCredentialIssuer(CredentialIssuer):
    """Issuer running inside the trusted server process."""

    def __init__(self, signer: TokenSigner):
        self._signer = signer

    async def issue_token(self, identity: str) -> str:
        if not identity:
            raise CredentialError("Missing identity", identity=identity)
        try:
            return self._signer.create_token(identity)
        except Exception as e:
            logger.error(f"Token signing failed for {identity}: {e}")
            raise CredentialError(f"Token signing failed: {e}", identity=identity) from e


class HttpCredentialIssuer(CredentialIssuer):
    """
    Issuer reached over HTTP, e.g. the ``/api/stream-token`` endpoint.

    Network failures and non-2xx answers all surface as ``CredentialError``
    so the widget can show an inline notice and offer a retry.
    """

    def __init__(
        self,
        endpoint: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        admin_key: Optional[str] = None,
    ):
        self.endpoint = endpoint
        self._client = client
        self._timeout = timeout
        self._admin_key = admin_key

    async def issue_token(self, identity: str) -> str:
        if not identity:
            raise CredentialError("Missing identity", identity=identity)

        headers = {"X-Admin-Key": self._admin_key} if self._admin_key else None

        try:
            if self._client is not None:
                resp = await self._client.post(self.endpoint, json={"userId": identity}, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.post(self.endpoint, json={"userId": identity}, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"Credential issuer unreachable at {self.endpoint}: {e}")
            raise CredentialError(f"Credential issuer unreachable: {e}", identity=identity) from e

        if resp.status_code >= 400:
            try:
                payload = resp.json()
                reason = payload.get("detail") or payload.get("error") or resp.text
            except (ValueError, AttributeError):
                reason = resp.text
            logger.warning(f"Credential issuer returned {resp.status_code} for {identity}: {reason}")
            raise CredentialError(
                f"Credential issuer returned {resp.status_code}: {reason}",
                identity=identity,
                status_code=resp.status_code,
            )

        try:
            token = resp.json().get("token")
        except (ValueError, AttributeError):
            token = None
        if not token:
            raise CredentialError("Credential issuer returned no token", identity=identity)
        return token
