import asyncio

import pytest

from chatstream_service.providers.replay.provider import ReplayProvider, split_chunks


async def collect(provider):
    return [c async for c in provider.stream()]


class TestSplitChunks:
    def test_fixed_size(self):
        assert split_chunks("abcdefgh", 3) == ["abc", "def", "gh"]

    def test_seeded_sizes(self):
        text = "x" * 100
        chunks = split_chunks(text, 7, seed=3)
        assert "".join(chunks) == text
        assert all(1 <= len(c) <= 7 for c in chunks)
        assert chunks == split_chunks(text, 7, seed=3)

    def test_empty_text(self):
        assert split_chunks("", 4) == []

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            split_chunks("abc", 0)


class TestReplayProvider:
    def test_streams_chunks(self):
        provider = ReplayProvider("hello world", chunk_size=4)
        assert asyncio.run(collect(provider)) == ["hell", "o wo", "rld"]

    def test_explicit_chunks(self):
        provider = ReplayProvider(chunks=["a", "bc"], delay=0.001)
        assert asyncio.run(collect(provider)) == ["a", "bc"]
