"""Bulk retrieval from sources that only answer bounded page requests."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Generic, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

Q = TypeVar("Q")
T = TypeVar("T")


@dataclass(frozen=True)
class PageRequest:
    """
    Half-open slice ``[offset, offset + batch_size)`` of a result set.

    ``range_header`` renders it in the ``items=<from>-<to>`` form the remote
    aggregate API expects in its ``Range`` header.
    """

    offset: int
    batch_size: int

    @property
    def end(self) -> int:
        return self.offset + self.batch_size

    @property
    def range_header(self) -> str:
        return f"items={self.offset}-{self.end}"


@dataclass
class FetchOutcome(Generic[T]):
    items: List[T] = field(default_factory=list)
    pages: int = 0
    error: Optional[BaseException] = None

    @property
    def partial(self) -> bool:
        return self.error is not None and bool(self.items)


class PaginatedBulkFetcher(Generic[Q, T]):
    """
    Drain a paginated source page by page.

    Pages are requested sequentially because the next offset depends on the
    size of the previous page. The loop advances only after a full page, so it
    ends on the first short page. A failing page stops the loop and the
    items gathered so far are kept.
    """

    def __init__(self, fetch_page: Callable[[Q, PageRequest], Sequence[T]]):
        self.fetch_page = fetch_page

    def fetch_pages(self, query: Q, batch_size: int) -> FetchOutcome[T]:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")

        outcome: FetchOutcome[T] = FetchOutcome()
        offset = 0
        while True:
            page = PageRequest(offset=offset, batch_size=batch_size)
            try:
                batch = list(self.fetch_page(query, page) or ())
            except Exception as exc:
                logger.warning(
                    "Paginated fetch stopped at %s after %d items: %s",
                    page.range_header,
                    len(outcome.items),
                    exc,
                )
                outcome.error = exc
                return outcome

            outcome.pages += 1
            outcome.items.extend(batch)
            if len(batch) < batch_size:
                return outcome
            offset += batch_size

    def fetch_all(self, query: Q, batch_size: int) -> List[T]:
        return self.fetch_pages(query, batch_size).items


def fetch_all(
    fetch_page: Callable[[Q, PageRequest], Sequence[T]],
    query: Q,
    batch_size: int,
) -> List[T]:
    return PaginatedBulkFetcher(fetch_page).fetch_all(query, batch_size)
