from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar


T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Pending(Generic[T]):
    """Local value shown while the remote write is in flight."""

    value: T
    previous: T


@dataclass(frozen=True, slots=True)
class Committed(Generic[T]):
    value: T


@dataclass(frozen=True, slots=True)
class RolledBack(Generic[T]):
    """The remote write failed and ``value`` is the restored item."""

    value: T
    error: BaseException


OptimisticState = Pending[T] | Committed[T] | RolledBack[T]


def settle(state: Pending[T], outcome: T | BaseException) -> Committed[T] | RolledBack[T]:
    if isinstance(outcome, BaseException):
        return RolledBack(value=state.previous, error=outcome)
    return Committed(value=outcome)
