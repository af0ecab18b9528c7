"""Edit-distance helpers for resolving loosely named identifiers."""

from __future__ import annotations

from typing import Iterable, Optional

DEFAULT_MATCH_THRESHOLD = 3


def edit_distance(left: str, right: str) -> int:
    """Return the Levenshtein distance between ``left`` and ``right``."""
    rows = len(left) + 1
    cols = len(right) + 1
    matrix = [[0] * cols for _ in range(rows)]

    for i in range(rows):
        matrix[i][0] = i
    for j in range(cols):
        matrix[0][j] = j

    for i in range(1, rows):
        for j in range(1, cols):
            cost = 0 if left[i - 1] == right[j - 1] else 1
            matrix[i][j] = min(
                matrix[i - 1][j] + 1,
                matrix[i][j - 1] + 1,
                matrix[i - 1][j - 1] + cost,
            )

    return matrix[rows - 1][cols - 1]


def find_best_match(
    source: str,
    candidates: Iterable[str],
    *,
    threshold: int = DEFAULT_MATCH_THRESHOLD,
) -> Optional[str]:
    """Return the candidate closest to ``source`` within ``threshold`` edits.

    Ties resolve to the earliest candidate. Empty candidates are ignored.
    """
    best: Optional[str] = None
    best_distance: Optional[int] = None

    for candidate in candidates:
        if not candidate:
            continue
        distance = edit_distance(source, candidate)
        if best_distance is None or distance < best_distance:
            best = candidate
            best_distance = distance

    if best_distance is None or best_distance > threshold:
        return None
    return best


__all__ = ["DEFAULT_MATCH_THRESHOLD", "edit_distance", "find_best_match"]
