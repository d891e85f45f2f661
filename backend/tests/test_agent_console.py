"""
Unit tests for the agent console.
"""

import asyncio
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

from shopchat.core.agent_console import CLOSED_NOTICE, AgentConsole, ConsoleState
from shopchat.core.errors import ChannelClosedError, ChannelError, CredentialError
from shopchat.core.session_manager import SessionManager
from shopchat.models import Channel, ChannelMetadata, MessageType, ProductRef

AGENT = "sales-agent"


async def open_customer_channel(registry, signer, customer, name="Alice", sku="HP-100"):
    await registry.connect_user(customer, signer.create_token(customer), name)
    product = ProductRef(sku=sku, name="Wireless Headphones", price=199.99)
    return await registry.create_or_join(
        f"support-{customer}",
        members=[customer, AGENT],
        metadata=ChannelMetadata.for_session(customer, product, name, url=f"https://shop.example/{sku}"),
        created_by=customer,
    )


def notices(messages):
    return [m for m in messages if m.type == MessageType.SYSTEM and m.text == CLOSED_NOTICE]


class TestConnect:
    """Tests for agent connection."""

    @pytest.mark.asyncio
    async def test_connect_with_preissued_token(self, config, registry, signer):
        console = AgentConsole(config, registry, agent_token=signer.create_token(AGENT))
        await console.connect()
        assert registry.is_connected(AGENT)

    @pytest.mark.asyncio
    async def test_connect_without_credentials(self, config, registry):
        console = AgentConsole(config, registry)
        with pytest.raises(CredentialError):
            await console.connect()


class TestListing:
    """Tests for the open-channel listing."""

    @pytest.mark.asyncio
    async def test_lists_open_agent_channels_most_recent_first(self, config, registry, signer, issuer):
        console = AgentConsole(config, registry, issuer=issuer)
        await console.connect()

        first = await open_customer_channel(registry, signer, "cust-1")
        second = await open_customer_channel(registry, signer, "cust-2")
        closed = await open_customer_channel(registry, signer, "cust-3")
        await registry.update_metadata(closed.id, {"closed": True})

        await registry.connect_user("loner", signer.create_token("loner"))
        await registry.create_or_join(
            "support-loner", members=["loner"], metadata=ChannelMetadata(), created_by="loner"
        )

        await registry.send_message(first.id, "cust-1", "ping")

        channels = await console.list_open_channels()
        assert [c.id for c in channels] == [first.id, second.id]
        assert all(not c.closed and AGENT in c.members for c in channels)

    @pytest.mark.asyncio
    async def test_lagging_backend_cannot_leak_closed_channels(self, config, registry, signer, issuer):
        console = AgentConsole(config, registry, issuer=issuer)
        channel = await open_customer_channel(registry, signer, "cust-1")
        stale = channel.model_copy(update={"data": channel.data.model_copy(update={"closed": True})})

        with patch.object(registry, "list", AsyncMock(return_value=[stale])):
            assert await console.list_open_channels() == []

    @pytest.mark.asyncio
    async def test_watch_yields_new_snapshot_on_change(self, config, registry, signer, issuer):
        console = AgentConsole(config, registry, issuer=issuer)
        listing = console.watch_open_channels()
        snapshots = listing.__aiter__()

        assert await asyncio.wait_for(snapshots.__anext__(), timeout=1) == []

        channel = await open_customer_channel(registry, signer, "cust-1")
        updated = await asyncio.wait_for(snapshots.__anext__(), timeout=1)
        assert [c.id for c in updated] == [channel.id]

        await registry.update_metadata(channel.id, {"closed": True})
        assert await asyncio.wait_for(snapshots.__anext__(), timeout=1) == []

        listing.cancel()
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(snapshots.__anext__(), timeout=1)
        assert registry.subscriber_count == 0


class TestSelection:
    """Tests for the selection state machine."""

    @pytest.mark.asyncio
    async def test_select_and_deselect(self, config, registry, signer, issuer):
        console = AgentConsole(config, registry, issuer=issuer)
        channel = await open_customer_channel(registry, signer, "cust-1")

        assert console.state == ConsoleState.NO_SELECTION
        active = console.select_channel(channel)
        assert console.state == ConsoleState.SELECTED
        assert console.select_channel(channel) is active

        console.deselect()
        assert console.state == ConsoleState.NO_SELECTION
        assert active.released

    @pytest.mark.asyncio
    async def test_selecting_another_channel_releases_previous(self, config, registry, signer, issuer):
        console = AgentConsole(config, registry, issuer=issuer)
        first = await open_customer_channel(registry, signer, "cust-1")
        second = await open_customer_channel(registry, signer, "cust-2")

        previous = console.select_channel(first)
        current = console.select_channel(second)
        assert previous.released
        assert console.active is current
        assert current.id == second.id

    @pytest.mark.asyncio
    async def test_cannot_select_foreign_channel(self, config, registry, signer, issuer):
        console = AgentConsole(config, registry, issuer=issuer)
        await registry.connect_user("loner", signer.create_token("loner"))
        foreign = await registry.create_or_join(
            "support-loner", members=["loner"], metadata=ChannelMetadata(), created_by="loner"
        )
        with pytest.raises(ChannelError):
            console.select_channel(foreign)
        assert console.state == ConsoleState.NO_SELECTION

    @pytest.mark.asyncio
    async def test_active_channel_streams_messages(self, config, registry, signer, issuer):
        console = AgentConsole(config, registry, issuer=issuer)
        channel = await open_customer_channel(registry, signer, "cust-1")
        active = console.select_channel(channel)
        stream = active.messages()

        await registry.send_message(channel.id, "cust-1", "Any discounts?")
        message = await asyncio.wait_for(stream.__anext__(), timeout=1)
        assert message.text == "Any discounts?"
        assert active.channel.last_message_at is not None
        assert [m.text for m in await active.history()] == ["Any discounts?"]
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_reply_requires_selection(self, config, registry, signer, issuer):
        console = AgentConsole(config, registry, issuer=issuer)
        await console.connect()
        with pytest.raises(ChannelError):
            await console.send_message("Hello")

        channel = await open_customer_channel(registry, signer, "cust-1")
        console.select_channel(channel)
        reply = await console.send_message("Hi Alice, how can I help?")
        assert reply.user_id == AGENT


class TestCloseChannel:
    """Tests for closing conversations."""

    @pytest.mark.asyncio
    async def test_close_active_channel(self, config, registry, signer, issuer):
        console = AgentConsole(config, registry, issuer=issuer)
        channel = await open_customer_channel(registry, signer, "cust-1")
        console.select_channel(channel)

        assert await console.close_channel() is True
        assert console.state == ConsoleState.NO_SELECTION
        assert (await registry.get(channel.id)).closed is True
        assert len(notices(await registry.messages(channel.id))) == 1
        assert await console.list_open_channels() == []

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, config, registry, signer, issuer):
        console = AgentConsole(config, registry, issuer=issuer)
        channel = await open_customer_channel(registry, signer, "cust-1")

        assert await console.close_channel(channel) is True
        assert await console.close_channel(channel) is False
        assert len(notices(await registry.messages(channel.id))) == 1

    @pytest.mark.asyncio
    async def test_concurrent_closes_post_one_notice(self, config, registry, signer, issuer):
        console = AgentConsole(config, registry, issuer=issuer)
        channel = await open_customer_channel(registry, signer, "cust-1")
        console.select_channel(channel)

        results = await asyncio.gather(console.close_channel(channel), console.close_channel(channel))

        assert sorted(results) == [False, True]
        assert len(notices(await registry.messages(channel.id))) == 1
        assert console.state == ConsoleState.NO_SELECTION

    @pytest.mark.asyncio
    async def test_close_without_selection(self, config, registry, issuer):
        console = AgentConsole(config, registry, issuer=issuer)
        with pytest.raises(ChannelError):
            await console.close_channel()

    @pytest.mark.asyncio
    async def test_failed_notice_keeps_selection_and_retry_posts_it(self, config, registry, signer, issuer):
        console = AgentConsole(config, registry, issuer=issuer)
        channel = await open_customer_channel(registry, signer, "cust-1")
        console.select_channel(channel)

        with patch.object(registry, "send_system_message", AsyncMock(side_effect=RuntimeError("network"))):
            with pytest.raises(ChannelError):
                await console.close_channel()

        assert console.state == ConsoleState.SELECTED
        assert (await registry.get(channel.id)).closed is True
        assert notices(await registry.messages(channel.id)) == []

        assert await console.close_channel() is True
        assert console.state == ConsoleState.NO_SELECTION
        assert len(notices(await registry.messages(channel.id))) == 1

    @pytest.mark.asyncio
    async def test_failed_update_posts_nothing(self, config, registry, signer, issuer):
        console = AgentConsole(config, registry, issuer=issuer)
        channel = await open_customer_channel(registry, signer, "cust-1")
        console.select_channel(channel)

        with patch.object(registry, "update_metadata", AsyncMock(side_effect=RuntimeError("network"))):
            with pytest.raises(ChannelError):
                await console.close_channel()

        assert console.state == ConsoleState.SELECTED
        assert (await registry.get(channel.id)).closed is False
        assert await registry.messages(channel.id) == []

    @pytest.mark.asyncio
    async def test_closing_other_channel_keeps_selection(self, config, registry, signer, issuer):
        console = AgentConsole(config, registry, issuer=issuer)
        first = await open_customer_channel(registry, signer, "cust-1")
        second = await open_customer_channel(registry, signer, "cust-2")
        console.select_channel(first)

        await console.close_channel(second)
        assert console.active.id == first.id


class TestProductInfo:
    """Tests for the product context panel."""

    @pytest.mark.asyncio
    async def test_product_info(self, registry, signer):
        channel = await open_customer_channel(registry, signer, "cust-1", name="Alice")
        assert AgentConsole.product_info(channel) == {
            "customer": "Alice",
            "url": "https://shop.example/HP-100",
            "sku": "HP-100",
            "product": "Wireless Headphones",
        }

    def test_product_info_defaults(self):
        channel = Channel(id="support-x", members=["x", AGENT], created_at=datetime.now(timezone.utc))
        assert AgentConsole.product_info(channel) == {
            "customer": "Customer",
            "url": "N/A",
            "sku": "N/A",
            "product": "N/A",
        }


class TestCustomerToAgentFlow:
    """Widget and console sharing one registry."""

    @pytest.mark.asyncio
    async def test_premium_headphones_conversation(self, config, registry, issuer):
        product = ProductRef(sku="PREM-HDPH-001", name="Premium Wireless Headphones", price=299.99)
        console = AgentConsole(config, registry, issuer=issuer)
        await console.connect()
        listing = console.watch_open_channels()
        snapshots = listing.__aiter__()
        assert await asyncio.wait_for(snapshots.__anext__(), timeout=1) == []

        widget = SessionManager(config, issuer, registry)
        session = await widget.activate("Guest", product)
        channel = session.channel
        assert channel.id == f"support-{session.identity}"
        assert channel.data.sku == "PREM-HDPH-001"
        assert channel.data.product.name == "Premium Wireless Headphones"
        assert channel.data.product.price == 299.99
        assert channel.data.customer_name == "Guest"
        assert channel.closed is False

        listed = await asyncio.wait_for(snapshots.__anext__(), timeout=1)
        assert [c.id for c in listed] == [channel.id]

        console.select_channel(listed[0])
        assert await console.close_channel() is True

        closed = await registry.get(channel.id)
        assert closed.closed is True
        assert (await registry.messages(channel.id))[-1].text == CLOSED_NOTICE
        assert await console.list_open_channels() == []

        with pytest.raises(ChannelClosedError):
            await session.send_message("Are you still there?")

        listing.cancel()
        await snapshots.aclose()
