import asyncio
import random
from typing import AsyncGenerator, Iterable, List, Optional

from chatstream_service.core.interfaces import ChunkSource


def split_chunks(text: str, chunk_size: int = 8, seed: Optional[int] = None) -> List[str]:
    """Cut text into fixed-size chunks, or random sizes in [1, chunk_size] when seeded."""
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    rng = random.Random(seed) if seed is not None else None
    chunks = []
    i = 0
    while i < len(text):
        size = rng.randint(1, chunk_size) if rng else chunk_size
        chunks.append(text[i : i + size])
        i += size
    return chunks


class ReplayProvider(ChunkSource):
    """Replays a recorded model reply as a chunk stream"""

    def __init__(
        self,
        text: str = "",
        chunks: Optional[Iterable[str]] = None,
        chunk_size: int = 8,
        seed: Optional[int] = None,
        delay: float = 0.0,
    ):
        self.chunks = list(chunks) if chunks is not None else split_chunks(text, chunk_size, seed)
        self.delay = delay

    async def stream(self) -> AsyncGenerator[str, None]:
        for chunk in self.chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield chunk
