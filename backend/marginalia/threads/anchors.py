"""Occurrence-index anchoring.

A selection is anchored as "the Nth literal occurrence of this substring in
the message's plain text". Message text never changes after creation, so the
pair (selection_text, match_index) stays valid across re-renders without any
character-offset bookkeeping.

Occurrences are non-overlapping: the search resumes after the end of each
match, so "aa" occurs twice in "aaaa", not three times.
"""


def _check_text(full_text: object, selection_text: object) -> None:
    if not isinstance(full_text, str) or not isinstance(selection_text, str):
        raise TypeError("full_text and selection_text must be str")


def find_occurrences(full_text: str, selection_text: str) -> list[int]:
    """Start positions of every non-overlapping occurrence."""
    _check_text(full_text, selection_text)
    if not full_text or not selection_text:
        return []
    positions: list[int] = []
    pos = full_text.find(selection_text)
    while pos >= 0:
        positions.append(pos)
        pos = full_text.find(selection_text, pos + len(selection_text))
    return positions


def resolve_occurrence(full_text: str, selection_text: str, approximate_offset: int) -> int:
    """Index of the occurrence whose start is closest to approximate_offset.

    Ties go to the earliest occurrence. Returns 0 when there are none.
    """
    if isinstance(approximate_offset, bool) or not isinstance(approximate_offset, int):
        raise TypeError("approximate_offset must be an int")
    if approximate_offset < 0:
        raise ValueError(f"approximate_offset must be >= 0, got {approximate_offset}")

    positions = find_occurrences(full_text, selection_text)
    best_index = 0
    best_distance: int | None = None
    for index, pos in enumerate(positions):
        distance = abs(pos - approximate_offset)
        if best_distance is None or distance < best_distance:
            best_index, best_distance = index, distance
    return best_index


def find_nth_occurrence(full_text: str, selection_text: str, match_index: int) -> int:
    """Start position of the match_index-th occurrence, or -1."""
    positions = find_occurrences(full_text, selection_text)
    target = max(0, match_index)
    if target >= len(positions):
        return -1
    return positions[target]
