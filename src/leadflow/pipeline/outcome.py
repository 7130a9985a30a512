"""Tagged stage outcomes.

Degraded-but-usable stage results are values, not exceptions: a stage returns
``PartialSuccess`` with the failures it absorbed, and only ``Fatal`` is turned
back into an exception for the retry handler.
"""

from dataclasses import dataclass, field
from typing import Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class StageFailure:
    """One item (query group, URL, provider call) that a stage could not process."""

    item: str
    reason: str
    timed_out: bool = False


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T


@dataclass(frozen=True)
class PartialSuccess(Generic[T]):
    value: T
    failures: list[StageFailure] = field(default_factory=list)


@dataclass(frozen=True)
class Fatal:
    error: Exception


StageOutcome = Union[Success[T], PartialSuccess[T], Fatal]


def unwrap(outcome: "StageOutcome[T]") -> T:
    """Return the stage value, raising the error of a Fatal outcome."""
    match outcome:
        case Success(value=value) | PartialSuccess(value=value):
            return value
        case Fatal(error=error):
            raise error
    raise TypeError(f"Not a stage outcome: {outcome!r}")

