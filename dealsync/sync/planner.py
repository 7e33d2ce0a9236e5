"""Pagination planning for offset/limit list endpoints."""

import math
from dataclasses import dataclass
from typing import Iterator, Sequence, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class PageRequest:
    """One list page to fetch."""

    offset: int
    limit: int


def effective_total(total_available: int, hard_cap: int | None = None) -> int:
    """Number of records a run will try to fetch."""
    if hard_cap is None:
        return total_available
    return min(total_available, hard_cap)


def plan_pages(
    total_available: int,
    page_size: int,
    hard_cap: int | None = None,
) -> list[PageRequest]:
    """
    Build the ordered list of pages covering the effective total.

    Args:
        total_available: Total reported by the probe request
        page_size: Records per page
        hard_cap: Optional processing cap

    Returns:
        PageRequests with offsets 0, page_size, 2*page_size, ...
    """
    if page_size <= 0:
        raise ValueError(f"page_size must be positive, got {page_size}")
    if total_available < 0:
        raise ValueError(f"total_available must not be negative, got {total_available}")
    if hard_cap is not None and hard_cap < 0:
        raise ValueError(f"hard_cap must not be negative, got {hard_cap}")

    total = effective_total(total_available, hard_cap)
    page_count = math.ceil(total / page_size)
    return [PageRequest(offset=page * page_size, limit=page_size) for page in range(page_count)]


def chunk_ids(ids: Sequence[T], size: int) -> Iterator[list[T]]:
    """Split ids into consecutive chunks of at most size items."""
    if size <= 0:
        raise ValueError(f"size must be positive, got {size}")
    for start in range(0, len(ids), size):
        yield list(ids[start:start + size])
