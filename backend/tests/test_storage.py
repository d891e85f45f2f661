"""
Unit tests for local filesystem storage.
"""

import pytest


class TestLocalStorage:
    """Tests for LocalStorage."""

    @pytest.mark.asyncio
    async def test_save_load_replace(self, storage):
        assert await storage.save("channels/a.json", "one")
        assert await storage.save("channels/a.json", b"two")
        assert await storage.load("channels/a.json") == b"two"

    @pytest.mark.asyncio
    async def test_missing_file(self, storage):
        assert await storage.load("channels/missing.json") is None
        assert await storage.list("nowhere") == []

    @pytest.mark.asyncio
    async def test_append(self, storage):
        await storage.append("messages/a.jsonl", "1\n")
        await storage.append("messages/a.jsonl", "2\n")
        assert await storage.load("messages/a.jsonl") == b"1\n2\n"

    @pytest.mark.asyncio
    async def test_list_with_pattern(self, storage):
        await storage.save("channels/b.json", "{}")
        await storage.save("channels/a.json", "{}")
        await storage.save("channels/notes.txt", "x")
        assert await storage.list("channels", pattern="*.json") == ["channels/a.json", "channels/b.json"]

    @pytest.mark.asyncio
    async def test_path_traversal_rejected(self, storage):
        assert await storage.save("../outside.json", "x") is False
        assert await storage.load("../outside.json") is None
