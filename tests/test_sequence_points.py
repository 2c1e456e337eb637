"""Tests for IL offset to source location resolution."""
from clr_symbolicator.models import HIDDEN_LINE, SequencePoint
from clr_symbolicator.sequence_points import find_sequence_point, resolve_location


def _point(offset, line, column=1, document="/src/a.cs"):
    return SequencePoint(offset, line, column, line, column + 10, document)


def _hidden(offset, document="/src/a.cs"):
    return SequencePoint(offset, HIDDEN_LINE, 0, HIDDEN_LINE, 0, document)


def test_empty_table_resolves_nothing():
    """No sequence points means no location."""
    assert resolve_location([], 0) is None


def test_offset_before_first_point():
    """A target strictly before the first point has no location."""
    points = [_point(4, 10), _point(8, 11)]
    assert resolve_location(points, 3) is None


def test_exact_and_between_offsets():
    """The last point at or before the target wins."""
    points = [_point(0, 10, 5), _point(6, 11, 9), _point(12, 14, 13)]
    assert resolve_location(points, 0) == (10, 5, "/src/a.cs")
    assert resolve_location(points, 6) == (11, 9, "/src/a.cs")
    assert resolve_location(points, 11) == (11, 9, "/src/a.cs")


def test_offset_past_last_point():
    """A target past every point resolves to the last real point."""
    points = [_point(0, 10), _hidden(4), _point(8, 20, 3), _hidden(30)]
    assert resolve_location(points, 500) == (20, 3, "/src/a.cs")


def test_hidden_point_never_replaces_earlier_point():
    """Landing exactly on a hidden point keeps the real point before it."""
    points = [_point(0, 10, 5), _hidden(5), _point(8, 20)]
    assert resolve_location(points, 5) == (10, 5, "/src/a.cs")
    assert resolve_location(points, 7) == (10, 5, "/src/a.cs")
    assert resolve_location(points, 8) == (20, 1, "/src/a.cs")


def test_only_hidden_points_before_target():
    """Compiler-injected code before any real point has no location."""
    points = [_hidden(0), _hidden(2), _point(10, 30)]
    assert resolve_location(points, 4) is None
    assert find_sequence_point(points, 4) is None


def test_unordered_points_are_sorted():
    """Points given out of order are scanned by ascending offset."""
    points = [_point(12, 14), _point(0, 10), _point(6, 11)]
    assert resolve_location(points, 7)[0] == 11
    assert resolve_location(points, 13)[0] == 14


def test_document_follows_point():
    """The document of the chosen point is reported."""
    points = [_point(0, 10, document="/src/a.cs"), _point(4, 3, document="/src/b.cs")]
    assert resolve_location(points, 5) == (3, 1, "/src/b.cs")


def test_find_sequence_point_returns_point():
    """find_sequence_point exposes the full span."""
    points = [_point(0, 10, 5), _point(6, 11, 9)]
    point = find_sequence_point(points, 7)
    assert point.offset == 6
    assert point.end_column == 19
    assert not point.is_hidden


def test_resolution_is_deterministic():
    """Resolving the same table twice gives the same answer."""
    points = [_point(0, 10), _hidden(3), _point(9, 12)]
    assert resolve_location(points, 4) == resolve_location(iter(points), 4)
