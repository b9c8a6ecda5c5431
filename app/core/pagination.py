# app/core/pagination.py

"""
Offset pagination over storage queries.
"""

import logging
from typing import Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

FetchPage = Callable[[int, int], Awaitable[list[T]]]


class Pages(Generic[T]):
    """
    Lazy, restartable sequence of pages.

    Each `async for` starts again from offset 0. Iteration ends on a
    short page or after `max_pages` pages, whichever comes first.
    """

    def __init__(self, fetch_page: FetchPage, page_size: int, max_pages: int, label: str = "query"):
        if page_size <= 0 or max_pages <= 0:
            raise ValueError("page_size and max_pages must be positive")
        self.fetch_page = fetch_page
        self.page_size = page_size
        self.max_pages = max_pages
        self.label = label

    async def __aiter__(self):
        offset = 0
        for _ in range(self.max_pages):
            page = await self.fetch_page(offset, self.page_size)
            if page:
                yield page
            if len(page) < self.page_size:
                return
            offset += self.page_size

        logger.warning(
            f"Pagination hit {self.max_pages} page safety limit for {self.label} "
            f"({self.max_pages * self.page_size} items)"
        )

    async def collect(self) -> list[T]:
        items: list[T] = []
        async for page in self:
            items.extend(page)
        return items
