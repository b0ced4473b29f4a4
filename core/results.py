"""
core/results.py -- Tagged result types for the request/response contract.

AuthService operations return Success(value) or Failure(error) instead of
raising for expected outcomes (bad input, bad credentials, lockout, rate
limit, conflict). Callers branch with isinstance() or structural pattern
matching:

    match service.login(email, password, client):
        case Success(value=payload):
            ...
        case Failure(error=err):
            ...

Failure.error is always a core.errors.SecurityError, so its .status tells the
caller which of the contract's outcome signals applies.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from core.errors import SecurityError, Status

T = TypeVar("T")


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T

    @property
    def status(self) -> Status:
        return Status.ok


@dataclass(frozen=True)
class Failure:
    error: SecurityError

    @property
    def status(self) -> Status:
        return self.error.status


Result = Union[Success[T], Failure]
