"""
Pagination decisions and the paged response envelope.
"""
import math
from typing import Any, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from crudhatch.options import QueryOptions
from crudhatch.request.models import ParsedRequest

T = TypeVar("T")


class GetManyResponse(BaseModel, Generic[T]):
    """Paged envelope returned by get-many when pagination is active."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    data: List[T] = Field(..., description="Rows of the current page")
    count: int = Field(..., description="Number of rows in this page")
    total: int = Field(..., description="Number of rows matching the search")
    page: int = Field(..., description="Current page, starting at 1")
    page_count: int = Field(..., description="Number of pages")


def get_take(parsed: ParsedRequest, options: QueryOptions) -> Optional[int]:
    """Client limit, else route limit, both capped by ``max_limit``; else ``max_limit``."""
    for limit in (parsed.limit, options.limit):
        if limit:
            if options.max_limit and limit > options.max_limit:
                return options.max_limit
            return limit
    return options.max_limit or None


def get_skip(parsed: ParsedRequest, take: Optional[int]) -> Optional[int]:
    if parsed.page and take:
        return take * (parsed.page - 1)
    return parsed.offset or None


def decide_pagination(parsed: ParsedRequest, options: QueryOptions) -> bool:
    """Paginate when always on, or when the client asked for a page, offset or limit that yields a take."""
    if options.always_paginate:
        return True
    requested = parsed.page is not None or parsed.offset is not None or parsed.limit is not None
    return requested and bool(get_take(parsed, options))


def create_page_info(data: List[Any], total: int, limit: Optional[int], offset: Optional[int]) -> GetManyResponse:
    offset = offset or 0
    return GetManyResponse(
        data=data,
        count=len(data),
        total=total,
        page=offset // limit + 1 if limit else 1,
        page_count=math.ceil(total / limit) if limit and total else 1,
    )
