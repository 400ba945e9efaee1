"""Base schema classes and generic types."""

from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ListResponse(BaseModel, Generic[T]):  # noqa: UP046
    """Generic list response with item count.

    ``total`` is the number of items on this page; use limit/offset query
    parameters at the router level to page.
    """

    items: list[T]
    total: int
