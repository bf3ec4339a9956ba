from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Optional

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class Pagination:
    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


def parse_pagination(
    page: Optional[int],
    page_size: Optional[int],
    *,
    default_page_size: int = DEFAULT_PAGE_SIZE,
) -> Pagination:
    safe_page = page if page is not None and page > 0 else DEFAULT_PAGE
    if page_size is None or page_size <= 0:
        safe_size = default_page_size
    else:
        safe_size = min(page_size, MAX_PAGE_SIZE)
    return Pagination(page=safe_page, page_size=safe_size)


def build_pagination_meta(total: int, pagination: Pagination) -> Dict[str, int]:
    total_pages = max(math.ceil(total / pagination.page_size), 1)
    return {
        "page": min(pagination.page, total_pages),
        "pageSize": pagination.page_size,
        "total": total,
        "totalPages": total_pages,
    }
