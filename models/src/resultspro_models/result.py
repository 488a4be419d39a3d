"""Outcome and pagination wrappers shared by services and the UI layer."""

from enum import Enum
from typing import Generic, TypeVar
from pydantic import BaseModel, Field, computed_field

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Why an operation failed."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    PERSISTENCE = "persistence"


class Result(BaseModel, Generic[T]):
    """Explicit success/failure outcome.

    Lets callers tell "loaded, nothing there" (ok with empty data) apart from
    "could not load" (not ok, with an error kind).
    """

    ok: bool
    data: T | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None

    @computed_field
    @property
    def retryable(self) -> bool:
        return self.error_kind == ErrorKind.PERSISTENCE

    @classmethod
    def success(cls, data: T | None = None) -> "Result[T]":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, kind: ErrorKind, error: str) -> "Result[T]":
        return cls(ok=False, error=error, error_kind=kind)


class Page(BaseModel, Generic[T]):
    """One page of a larger ordered result set."""

    items: list[T] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20

    @computed_field
    @property
    def has_more(self) -> bool:
        return self.total > self.page * self.page_size
