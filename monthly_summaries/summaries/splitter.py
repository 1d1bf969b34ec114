"""Boundary-aware partitioning of a document's lines into segments."""
from __future__ import annotations

from typing import List, Sequence, Tuple

from .types import Segment

SECTION_MARKER = "## "


def is_boundary(line: str, marker: str = SECTION_MARKER) -> bool:
    return line.startswith(marker)


def split_in_two(lines: Sequence[str], marker: str = SECTION_MARKER) -> Tuple[Segment, Segment]:
    """Split at the first section heading at or after the midpoint.

    Falls back to the exact midpoint when no heading follows it.
    """
    midpoint = len(lines) // 2
    split_index = midpoint
    for index in range(midpoint, len(lines)):
        if is_boundary(lines[index], marker):
            split_index = index
            break
    first, second = _cut(lines, [split_index])
    return first, second


def split_in_four(lines: Sequence[str], marker: str = SECTION_MARKER) -> List[Segment]:
    """Split into four ordered segments near the quarter points.

    Each cut looks ahead up to one quarter-length from its target for a
    section heading and uses the raw target when none is found. Cut points
    never decrease.
    """
    total = len(lines)
    quarter = total // 4
    split_points: List[int] = []
    for position in range(1, 4):
        target = position * quarter
        split_index = target
        for index in range(target, min(target + quarter, total)):
            if is_boundary(lines[index], marker):
                split_index = index
                break
        if split_points:
            split_index = max(split_index, split_points[-1])
        split_points.append(split_index)
    return _cut(lines, split_points)


def _cut(lines: Sequence[str], split_points: Sequence[int]) -> List[Segment]:
    bounds = [0, *split_points, len(lines)]
    count = len(bounds) - 1
    return [
        Segment(index=i, total=count, lines=tuple(lines[bounds[i] : bounds[i + 1]]))
        for i in range(count)
    ]
