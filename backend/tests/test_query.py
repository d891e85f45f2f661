"""
Unit tests for channel filter and sort evaluation.
"""

import pytest
from datetime import datetime, timedelta, timezone

from shopchat.core.errors import ChannelError
from shopchat.models import Channel, ChannelMetadata
from shopchat.registry.query import matches_filter, query_channels, sort_channels

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_channel(cid, members=("cust", "sales-agent"), closed=False, created=T0, last=None, **data):
    return Channel(
        id=cid,
        members=list(members),
        data=ChannelMetadata(closed=closed, **data),
        created_at=created,
        updated_at=created,
        last_message_at=last,
    )


class TestMatchesFilter:
    """Tests for the filter dialect."""

    def test_members_in(self):
        channel = make_channel("support-a")
        assert matches_filter(channel, {"members": {"$in": ["sales-agent"]}})
        assert not matches_filter(channel, {"members": {"$in": ["someone-else"]}})

    def test_members_all_and_exact(self):
        channel = make_channel("support-a")
        assert matches_filter(channel, {"members": {"$all": ["cust", "sales-agent"]}})
        assert matches_filter(channel, {"members": ["sales-agent", "cust"]})
        assert not matches_filter(channel, {"members": ["sales-agent"]})

    def test_member_shorthand(self):
        assert matches_filter(make_channel("support-a"), {"members": "cust"})

    def test_channel_and_metadata_fields(self):
        channel = make_channel("support-a", sku="HP-100")
        assert matches_filter(channel, {"type": "messaging", "closed": False, "sku": "HP-100"})
        assert not matches_filter(channel, {"closed": True})

    def test_operators(self):
        channel = make_channel("support-a", sku="HP-100")
        assert matches_filter(channel, {"sku": {"$ne": "XX"}})
        assert matches_filter(channel, {"sku": {"$in": ["HP-100", "HP-200"]}})
        assert not matches_filter(channel, {"sku": {"$eq": "HP-200"}})

    def test_unknown_operator_rejected(self):
        with pytest.raises(ChannelError):
            matches_filter(make_channel("support-a"), {"sku": {"$regex": ".*"}})

    def test_empty_filter_matches(self):
        assert matches_filter(make_channel("support-a"), {})


class TestSortChannels:
    """Tests for listing order."""

    def test_most_recent_activity_first(self):
        old = make_channel("support-old", last=T0 + timedelta(minutes=1))
        new = make_channel("support-new", last=T0 + timedelta(minutes=5))
        quiet = make_channel("support-quiet", created=T0 + timedelta(minutes=3))

        ordered = sort_channels([old, new, quiet], {"last_message_at": -1})
        assert [c.id for c in ordered] == ["support-new", "support-quiet", "support-old"]

    def test_unsupported_sort_field(self):
        with pytest.raises(ChannelError):
            sort_channels([make_channel("support-a")], {"name": 1})

    def test_query_applies_limit_after_sort(self):
        channels = [
            make_channel(f"support-{i}", last=T0 + timedelta(minutes=i)) for i in range(5)
        ]
        result = query_channels(channels, {"closed": False}, {"last_message_at": -1}, limit=2)
        assert [c.id for c in result] == ["support-4", "support-3"]
