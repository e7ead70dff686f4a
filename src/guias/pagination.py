"""Row-window pagination shared by every list operation."""

import math
from dataclasses import dataclass, field
from typing import Any, List, Tuple

from sqlalchemy.orm import Query

from .errors import InvalidInputError

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


@dataclass
class Paged:
    """One window of rows plus the counters clients page with."""

    data: List[Any]
    page: int
    page_size: int
    total_count: int
    total_pages: int = field(init=False)
    has_previous: bool = field(init=False)
    has_next: bool = field(init=False)

    def __post_init__(self) -> None:
        self.total_pages = math.ceil(self.total_count / self.page_size) if self.page_size > 0 else 0
        self.has_previous = self.page > 1
        self.has_next = self.page < self.total_pages


def check_page_params(page: int, page_size: int, all_records: bool, max_page_size: int = MAX_PAGE_SIZE) -> None:
    if all_records:
        return
    if page < 1:
        raise InvalidInputError("page must be greater than or equal to 1")
    if page_size < 1 or page_size > max_page_size:
        raise InvalidInputError(f"page_size must be between 1 and {max_page_size}")


def row_window(page: int, page_size: int) -> Tuple[int, int]:
    """Return ``(start_row, end_row)``; rows with ordinal in (start, end] belong to the page."""
    return (page - 1) * page_size, page * page_size


def paginate(query: Query, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE, all_records: bool = False) -> Paged:
    """Apply the row window to an already ordered query."""
    total = query.order_by(None).count()
    if all_records:
        rows = query.all()
        return Paged(data=rows, page=1, page_size=total, total_count=total)

    start_row, end_row = row_window(page, page_size)
    rows = query.offset(start_row).limit(end_row - start_row).all()
    return Paged(data=rows, page=page, page_size=page_size, total_count=total)
