"""
HTTP Channel Registry - client for a remote registry service.

Acts as exactly one connected identity at a time, the way a chat SDK
client does: every request carries that identity's bearer token.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Set

import httpx
from pydantic import ValidationError

from .interface import ChannelRegistry
from ..core.errors import (
    ChannelClosedError, ChannelError, ChannelNotFoundError, CredentialError, TransportError,
)
from ..core.subscription import Subscription
from ..models import Channel, ChannelMetadata, ChatMessage, RegistryEvent

logger = logging.getLogger(__name__)


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the data payload of each Server-Sent Event in a line stream."""
    data: List[str] = []
    async for line in lines:
        if not line:
            if data:
                yield "\n".join(data)
                data = []
            continue
        if line.startswith(":"):
            continue  # comment / keep-alive
        field, _, value = line.partition(":")
        if field == "data":
            data.append(value[1:] if value.startswith(" ") else value)
    if data:
        yield "\n".join(data)


class HttpChannelRegistry(ChannelRegistry):
    """Channel registry reached over the ShopChat REST API."""

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._identity: Optional[str] = None
        self._token: Optional[str] = None
        self._streams: Set[asyncio.Task] = set()

    # ----- plumbing -----

    def _headers(self) -> Dict[str, str]:
        if self._token is None:
            raise TransportError("No identity is connected")
        return {"Authorization": f"Bearer {self._token}"}

    def _require_identity(self, identity: str) -> None:
        if identity != self._identity or self._token is None:
            raise TransportError(f"{identity} is not connected", identity=identity)

    @staticmethod
    def _raise_for_status(resp: httpx.Response, channel_id: Optional[str]) -> None:
        if resp.status_code < 400:
            return
        try:
            detail = resp.json().get("detail", resp.text)
        except (ValueError, AttributeError):
            detail = resp.text

        if resp.status_code == 401:
            raise CredentialError(f"Token rejected: {detail}", status_code=401)
        if resp.status_code == 404:
            raise ChannelNotFoundError(str(detail), channel_id=channel_id)
        if resp.status_code == 409:
            raise ChannelClosedError(str(detail), channel_id=channel_id)
        if resp.status_code >= 500:
            raise TransportError(f"Registry returned {resp.status_code}: {detail}")
        raise ChannelError(str(detail), channel_id=channel_id)

    async def _request(
        self,
        method: str,
        path: str,
        channel_id: Optional[str] = None,
        **kwargs: Any,
    ) -> Any:
        headers = self._headers()
        try:
            resp = await self._client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"Registry request {method} {path} failed: {e}")
            raise TransportError(f"Registry unreachable: {e}", identity=self._identity) from e
        self._raise_for_status(resp, channel_id)
        return resp.json()

    # ----- connections -----

    async def connect_user(self, identity: str, token: str, name: Optional[str] = None) -> None:
        if not identity or not token:
            raise CredentialError("Identity and token are required", identity=identity)
        if self._identity is not None and self._identity != identity:
            await self.disconnect_user(self._identity)
        self._identity = identity
        self._token = token
        logger.info(f"Connected to registry at {self.base_url} as {identity}")

    async def disconnect_user(self, identity: str) -> None:
        if identity != self._identity:
            return
        for task in list(self._streams):
            task.cancel()
        self._identity = None
        self._token = None
        logger.info(f"Disconnected {identity} from registry")

    def is_connected(self, identity: str) -> bool:
        return self._token is not None and identity == self._identity

    # ----- channels -----

    async def create_or_join(
        self,
        channel_id: str,
        members: List[str],
        metadata: ChannelMetadata,
        created_by: str,
    ) -> Channel:
        self._require_identity(created_by)
        body = {"members": members, "data": metadata.model_dump(mode="json")}
        data = await self._request("POST", f"/channels/{channel_id}", channel_id, json=body)
        return Channel.model_validate(data)

    async def get(self, channel_id: str) -> Channel:
        data = await self._request("GET", f"/channels/{channel_id}", channel_id)
        return Channel.model_validate(data)

    async def list(
        self,
        filter: Dict[str, Any],
        sort: Optional[Dict[str, int]] = None,
        limit: Optional[int] = None,
    ) -> List[Channel]:
        body: Dict[str, Any] = {"filter": filter}
        if sort is not None:
            body["sort"] = sort
        if limit is not None:
            body["limit"] = limit
        data = await self._request("POST", "/channels/query", json=body)
        return [Channel.model_validate(item) for item in data]

    async def update_metadata(self, channel_id: str, patch: Dict[str, Any]) -> Channel:
        data = await self._request("PATCH", f"/channels/{channel_id}", channel_id, json={"set": patch})
        return Channel.model_validate(data)

    # ----- messages -----

    async def send_message(self, channel_id: str, user_id: str, text: str) -> ChatMessage:
        self._require_identity(user_id)
        data = await self._request("POST", f"/channels/{channel_id}/messages", channel_id, json={"text": text})
        return ChatMessage.model_validate(data)

    async def send_system_message(self, channel_id: str, text: str) -> ChatMessage:
        data = await self._request(
            "POST", f"/channels/{channel_id}/system-messages", channel_id, json={"text": text}
        )
        return ChatMessage.model_validate(data)

    async def messages(self, channel_id: str, limit: Optional[int] = None) -> List[ChatMessage]:
        params = {"limit": limit} if limit else None
        data = await self._request("GET", f"/channels/{channel_id}/messages", channel_id, params=params)
        return [ChatMessage.model_validate(item) for item in data]

    # ----- live events -----

    def subscribe(
        self,
        channel_id: Optional[str] = None,
        member: Optional[str] = None,
    ) -> Subscription[RegistryEvent]:
        headers = self._headers()
        task: Optional[asyncio.Task] = None

        def _release(sub: Subscription) -> None:
            # The pump cancels its own subscription when the stream ends
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()

        subscription: Subscription[RegistryEvent] = Subscription(on_cancel=_release)
        task = asyncio.ensure_future(self._pump_events(subscription, headers, channel_id, member))
        self._streams.add(task)
        task.add_done_callback(self._streams.discard)
        return subscription

    async def _pump_events(
        self,
        subscription: Subscription[RegistryEvent],
        headers: Dict[str, str],
        channel_id: Optional[str],
        member: Optional[str],
    ) -> None:
        """Read the SSE stream into the subscription until either side stops."""
        try:
            async with self._client.stream(
                "GET", f"{self.base_url}/channels/events", headers=headers, timeout=None
            ) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                self._raise_for_status(resp, None)
                async for payload in iter_sse_data(resp.aiter_lines()):
                    try:
                        event = RegistryEvent.model_validate_json(payload)
                    except ValidationError as e:
                        logger.warning(f"Ignoring malformed registry event: {e}")
                        continue
                    if channel_id is not None and event.channel_id != channel_id:
                        continue
                    if member is not None and member not in event.channel.members:
                        continue
                    subscription.put(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Registry event stream ended: {e}")
        finally:
            subscription.cancel()

    async def close(self) -> None:
        for task in list(self._streams):
            task.cancel()
        if self._owns_client:
            await self._client.aclose()
