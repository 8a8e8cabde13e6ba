import math

from .config import DEFAULT_PAGE_LIMIT


def parse_positive_int(value, default: int) -> int:
    """Lenient query parsing: junk, zero and negative values fall back to the default."""
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def page_params(page, limit) -> tuple[int, int]:
    page = parse_positive_int(page, 1)
    limit = parse_positive_int(limit, DEFAULT_PAGE_LIMIT)
    return page, limit


def page_meta(total: int, page: int, limit: int) -> dict:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "totalPages": total_pages,
        "currentPage": page,
        "hasNextPage": page < total_pages,
        "hasPreviousPage": page > 1,
    }
