"""
Offset pagination parsed from query parameters.
"""

from dataclasses import dataclass

from fastapi import Query


@dataclass(frozen=True)
class OffsetPagination:
    page: int
    limit: int

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


def offset_pagination(
    page: int = Query(1, ge=1, description="1-based page number"),
    limit: int = Query(20, ge=1, le=100, description="Items per page"),
) -> OffsetPagination:
    return OffsetPagination(page=page, limit=limit)
