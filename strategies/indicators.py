from __future__ import annotations

from typing import List


def lowest(values: List[int]) -> int:
    return min(values)


def highest(values: List[int]) -> int:
    return max(values)


def average(values: List[int]) -> int:
    """Integer mean in cents, rounded down."""
    return sum(values) // len(values)
