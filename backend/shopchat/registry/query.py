"""
Channel filter and sort evaluation.

Filters use the small Mongo-like dialect of hosted chat backends:

    {"members": {"$in": ["sales-agent"]}, "type": "messaging", "closed": False}

``members``, ``type``, ``id`` and ``created_by`` address the channel itself;
any other key addresses a metadata field.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from ..core.errors import ChannelError
from ..models import Channel

_CHANNEL_FIELDS = {"type", "id", "created_by"}
_SORT_FIELDS = {"last_message_at", "created_at", "updated_at"}
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _match_value(actual: Any, condition: Any) -> bool:
    if isinstance(condition, dict):
        for op, expected in condition.items():
            if op == "$eq":
                if actual != expected:
                    return False
            elif op == "$ne":
                if actual == expected:
                    return False
            elif op == "$in":
                if actual not in expected:
                    return False
            else:
                raise ChannelError(f"Unsupported filter operator: {op}")
        return True
    return actual == condition


def _match_members(members: List[str], condition: Any) -> bool:
    if isinstance(condition, str):
        return condition in members
    if isinstance(condition, dict):
        for op, expected in condition.items():
            if op == "$in":
                if not any(m in members for m in expected):
                    return False
            elif op == "$all":
                if not all(m in members for m in expected):
                    return False
            else:
                raise ChannelError(f"Unsupported members operator: {op}")
        return True
    if isinstance(condition, list):
        return sorted(members) == sorted(condition)
    raise ChannelError(f"Invalid members condition: {condition!r}")


def matches_filter(channel: Channel, filter: Dict[str, Any]) -> bool:
    """Whether a channel satisfies every condition of the filter."""
    data = channel.data.model_dump()
    for key, condition in filter.items():
        if key == "members":
            ok = _match_members(channel.members, condition)
        elif key in _CHANNEL_FIELDS:
            ok = _match_value(getattr(channel, key), condition)
        else:
            ok = _match_value(data.get(key), condition)
        if not ok:
            return False
    return True


def _sort_value(channel: Channel, field: str) -> datetime:
    if field == "last_message_at":
        return channel.activity_at
    return getattr(channel, field) or _EPOCH


def sort_channels(channels: Iterable[Channel], sort: Optional[Dict[str, int]] = None) -> List[Channel]:
    """
    Order channels by the given sort mapping, most significant key first.

    Channels without messages rank by creation time under ``last_message_at``.
    """
    result = list(channels)
    # Stable sorts applied from least to most significant key
    for field, direction in reversed(list((sort or {}).items())):
        if field not in _SORT_FIELDS:
            raise ChannelError(f"Unsupported sort field: {field}")
        result.sort(key=lambda c: _sort_value(c, field), reverse=direction < 0)
    return result


def query_channels(
    channels: Iterable[Channel],
    filter: Dict[str, Any],
    sort: Optional[Dict[str, int]] = None,
    limit: Optional[int] = None,
) -> List[Channel]:
    matched = [c for c in channels if matches_filter(c, filter)]
    ordered = sort_channels(matched, sort)
    return ordered[:limit] if limit else ordered
