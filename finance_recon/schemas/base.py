"""Base schema classes and generic list envelopes."""

from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict

T = TypeVar("T")


class BaseResponse(BaseModel):
    """Response read straight from ORM rows."""

    model_config = ConfigDict(from_attributes=True)


class ListResponse(BaseModel, Generic[T]):  # noqa: UP046
    """Unpaged collection, e.g. a session's audit trail."""

    items: list[T]
    total: int


class PageResponse(ListResponse[T], Generic[T]):  # noqa: UP046
    """One page of a filtered query; ``total`` counts every matching row."""

    limit: int
    offset: int
