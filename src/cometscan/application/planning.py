from __future__ import annotations
from typing import Iterator
from ..domain.models import BlockRange

def plan_ranges(start_block: int, end_block: int, max_span: int) -> Iterator[BlockRange]:
    """Split [start_block, end_block] into consecutive sub-ranges of at most `max_span` blocks.

    Covers the input exactly once: no gaps, no overlaps, ceil(W / max_span) pieces.
    Lazy, so a long backlog costs nothing until walked.
    """
    if max_span < 1:
        raise ValueError(f"max_span must be >= 1, got {max_span}")
    b = start_block
    while b <= end_block:
        fb, tb = b, min(end_block, b + max_span - 1)
        yield BlockRange(start=fb, end=tb)
        b = tb + 1
