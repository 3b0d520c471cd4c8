from __future__ import annotations

from typing import Dict, Iterable, List

from .models import GenomicInterval, ReferenceSequence

DEFAULT_BLOCK_SIZE = 10_000


def partition(length: int, block_size: int = DEFAULT_BLOCK_SIZE) -> List[GenomicInterval]:
    """Tile ``[0, length)`` with consecutive half-open blocks of ``block_size``.

    The last block is shorter when ``length`` is not a multiple of ``block_size``.
    A zero-length sequence yields no blocks.
    """
    if length < 0:
        raise ValueError(f"length must be >= 0, got {length}")
    if block_size <= 0:
        raise ValueError(f"block_size must be > 0, got {block_size}")
    return [
        GenomicInterval(start, min(length, start + block_size))
        for start in range(0, length, block_size)
    ]


def build_block_jobs(
    references: Iterable[ReferenceSequence],
    block_size: int = DEFAULT_BLOCK_SIZE,
) -> Dict[str, List[GenomicInterval]]:
    """Map each reference name to its list of blocks, in header order."""
    return {ref.name: partition(ref.length, block_size) for ref in references}
