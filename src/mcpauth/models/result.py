"""Result type for fallible auth operations.

Every fallible operation in the flow and token services returns either
``Ok(value)`` or ``Err(error)`` instead of raising. Callers branch with
structural pattern matching:

    match await manager.get_valid_token("user-1"):
        case Ok(token):
            ...
        case Err(error):
            ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, NoReturn, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")
U = TypeVar("U")


class UnwrapError(Exception):
    """Raised when unwrapping an ``Err`` result."""

    def __init__(self, error: object) -> None:
        super().__init__(str(error))
        self.error = error


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful result carrying a value."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: object) -> T:
        return self.value

    def map(self, fn: Callable[[T], U]) -> Ok[U]:
        return Ok(fn(self.value))


@dataclass(frozen=True)
class Err(Generic[E]):
    """Failed result carrying an error."""

    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> NoReturn:
        raise UnwrapError(self.error)

    def unwrap_or(self, default: U) -> U:
        return default

    def map(self, fn: Callable[..., object]) -> Err[E]:
        return self


Result = Union[Ok[T], Err[E]]
