"""Edit-distance based string similarity."""

from __future__ import annotations


def levenshtein(a: str, b: str) -> int:
    """Classic edit distance with unit insert/delete/substitute costs.

    Fills the full ``len(a) x len(b)`` dynamic-programming table row by row,
    keeping only the previous row in memory.
    """
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            if char_a == char_b:
                current.append(previous[j - 1])
            else:
                current.append(
                    min(
                        previous[j - 1] + 1,  # substitution
                        current[j - 1] + 1,   # insertion
                        previous[j] + 1,      # deletion
                    )
                )
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """Return ``1 - distance / max(len(a), len(b))`` in [0, 1].

    Equal strings (including two empty strings) score ``1.0``.
    """
    if a == b:
        return 1.0
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / max_len
