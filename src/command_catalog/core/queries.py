from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Mapping

from .errors import NotFound
from .storage import Storage
from .types import Command
from .utils import DEFAULT_PAGE_SIZE, max_page_size

FILTER_KEYS = ("search", "vendor__name", "platform__name", "tag__name", "version", "vendor_id")


@dataclass
class Page:
    count: int
    page: int
    page_size: int
    results: list[Command] = field(default_factory=list)

    @property
    def num_pages(self) -> int:
        if self.count == 0:
            return 1
        return int(math.ceil(self.count / self.page_size))

    @property
    def next_page(self) -> int | None:
        return self.page + 1 if self.page < self.num_pages else None

    @property
    def previous_page(self) -> int | None:
        return self.page - 1 if self.page > 1 else None


def _positive_int(value: Any, default: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def normalize_filters(params: Mapping[str, Any]) -> dict[str, Any]:
    filters: dict[str, Any] = {}
    for key in FILTER_KEYS:
        value = params.get(key)
        if value is None:
            continue
        if key == "vendor_id":
            try:
                filters[key] = int(value)
            except (TypeError, ValueError):
                continue
            continue
        text = str(value).strip()
        if text:
            filters[key] = text
    return filters


def list_commands(
    storage: Storage,
    page: Any = 1,
    page_size: Any = DEFAULT_PAGE_SIZE,
    filters: Mapping[str, Any] | None = None,
) -> Page:
    """One page of commands matching every given filter, ordered by id."""

    number = _positive_int(page, 1)
    size = min(_positive_int(page_size, DEFAULT_PAGE_SIZE), max_page_size())
    cleaned = normalize_filters(filters or {})
    total, results = storage.query_commands(cleaned, limit=size, offset=(number - 1) * size)
    result = Page(count=total, page=number, page_size=size, results=results)
    if number > result.num_pages:
        raise NotFound("Invalid page.")
    return result


def all_matching_commands(storage: Storage, filters: Mapping[str, Any] | None = None) -> list[Command]:
    _, results = storage.query_commands(normalize_filters(filters or {}))
    return results
