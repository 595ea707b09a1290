"""
Small functional helpers. `Either` + `attempt` carry a failure through a sequence of steps, so that
it gets handled once at the end instead of after every step
"""

from dataclasses import dataclass
from typing import Any, Callable, Generic, Iterable, NoReturn, Optional, TypeVar

from typing_extensions import Self

T = TypeVar("T")
U = TypeVar("U")
E = TypeVar("E", bound=BaseException)


def maybe_head(v: Iterable[T]) -> Optional[T]:
    return next(iter(v), None)


def assert_never(v: Any) -> NoReturn:
    """For exhaustive enum/union checks etc"""
    raise TypeError(v)


def distinct(v: Iterable[T]) -> list[T]:
    """Deduplicates, keeping the first occurrence"""
    return list(dict.fromkeys(v))


@dataclass(frozen=True)
class Either(Generic[T, E]):
    t: Optional[T] = None
    e: Optional[E] = None

    @classmethod
    def ok(cls, t: T) -> Self:
        return cls(t=t)

    @classmethod
    def error(cls, e: E) -> Self:
        return cls(e=e)

    def is_ok(self) -> bool:
        return self.e is None

    def get_or_raise(self) -> T:
        if self.e is not None:
            raise self.e
        return self.t  # type: ignore[return-value]

    def chain(self, f: Callable[[T], "Either[U, E]"]) -> "Either[U, E]":
        """Continues with `f` on success, otherwise passes the error along without calling it"""
        if self.e is not None:
            return Either(e=self.e)
        return f(self.t)  # type: ignore[arg-type]


def attempt(f: Callable[[], T], wrap: Callable[[Exception], E]) -> Either[T, E]:
    try:
        return Either(t=f())
    except Exception as e:
        return Either(e=wrap(e))
