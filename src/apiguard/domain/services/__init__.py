"""Domain services for apiguard.

Pure functions with no external dependencies.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

import structlog

logger = structlog.get_logger(__name__)


def deduplicate_identifiers(identifiers: Iterable[str]) -> list[str]:
    """Drop repeated identifiers, keeping first-occurrence order.

    Args:
        identifiers: Item identifiers as supplied by the caller

    Returns:
        List of unique identifiers in input order
    """
    seen: dict[str, None] = {}
    total = 0
    for identifier in identifiers:
        total += 1
        seen.setdefault(identifier, None)

    if total != len(seen):
        logger.debug(
            "identifiers_deduplicated",
            original_count=total,
            unique_count=len(seen),
        )

    return list(seen)


def chunk_identifiers(identifiers: Sequence[str], size: int) -> list[list[str]]:
    """Split identifiers into consecutive sub-batches of at most ``size`` items.

    Args:
        identifiers: Identifiers to split
        size: Maximum sub-batch size (>= 1)

    Returns:
        List of sub-batches, preserving order

    Raises:
        ValueError: If size is smaller than 1
    """
    if size < 1:
        msg = f"Batch size must be >= 1, got {size}"
        raise ValueError(msg)
    return [list(identifiers[i : i + size]) for i in range(0, len(identifiers), size)]


__all__ = ["chunk_identifiers", "deduplicate_identifiers"]
