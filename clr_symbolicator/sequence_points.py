"""IL offset to source location lookup.

A method's sequence points are walked in ascending IL offset order. The
best match is the last non-hidden point at or before the target offset.
Hidden points never replace an earlier real point, but they still bound
the scan like any other point.
"""
from __future__ import annotations

from typing import Iterable, Optional, Sequence, Tuple

from .models import SequencePoint


def _ordered(points: Iterable[SequencePoint]) -> Sequence[SequencePoint]:
    points = list(points)
    for previous, current in zip(points, points[1:]):
        if current.offset < previous.offset:
            # sorted() is stable: points sharing an offset keep their order
            return sorted(points, key=lambda p: p.offset)
    return points


def find_sequence_point(points: Iterable[SequencePoint], il_offset: int) -> Optional[SequencePoint]:
    """Return the sequence point that covers ``il_offset``, if any."""
    best: Optional[SequencePoint] = None
    for point in _ordered(points):
        if point.offset > il_offset:
            break
        if not point.is_hidden:
            best = point
    return best


def resolve_location(points: Iterable[SequencePoint], il_offset: int) -> Optional[Tuple[int, int, Optional[str]]]:
    """Map an IL offset to ``(line, column, document)``.

    Returns None when the offset is before the first point or only hidden
    points precede it.
    """
    point = find_sequence_point(points, il_offset)
    if point is None:
        return None
    return point.start_line, point.start_column, point.document
