"""
Content chunking and token estimation
"""

import math
from dataclasses import dataclass
from typing import List

from repo_scanner.config import settings


@dataclass(frozen=True)
class Chunk:
    content: str
    start: int
    end: int
    is_last: bool

    @property
    def label(self) -> str:
        return f"Chars {self.start}-{self.end}"


def chunk_content(content: str, chunk_size: int) -> List[Chunk]:
    """
    Split content into contiguous slices of at most ``chunk_size`` characters.

    The result depends only on the content and the size, so a resumed run
    can re-derive the same chunks from ``last_chunk_position``.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    length = len(content)
    chunks = []
    for start in range(0, length, chunk_size):
        end = min(start + chunk_size, length)
        chunks.append(Chunk(content[start:end], start, end, end == length))
    return chunks


def estimate_tokens(text: str, tokens_per_char: float = None) -> int:
    """Approximate provider tokens from character count"""
    ratio = settings.tokens_per_char if tokens_per_char is None else tokens_per_char
    return math.ceil(len(text) * ratio)
