"""
Result values returned across the pipeline's component boundaries.

Components that talk to the model never raise for expected failures; they
return ``Ok(value)`` or ``Fail(error)`` so every fallback path is a plain
branch the caller can test.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Fail(Generic[E]):
    error: E

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Fail[E]]
