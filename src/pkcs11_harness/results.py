from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


class Outcome(enum.Enum):
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class StepResult(Generic[T]):
    """
    Result of a provisioning step.

    SKIPPED means an optional dependency is unavailable. It is a success for
    exit code purposes but carries no value, and callers must not treat it
    as OK.
    """

    outcome: Outcome
    value: T | None = None
    detail: str = ""

    @classmethod
    def ok(cls, value: T, detail: str = "") -> "StepResult[T]":
        return cls(Outcome.OK, value, detail)

    @classmethod
    def skipped(cls, reason: str) -> "StepResult[T]":
        return cls(Outcome.SKIPPED, None, reason)

    @classmethod
    def failed(cls, reason: str) -> "StepResult[T]":
        return cls(Outcome.FAILED, None, reason)

    @property
    def is_ok(self) -> bool:
        return self.outcome is Outcome.OK

    @property
    def is_skipped(self) -> bool:
        return self.outcome is Outcome.SKIPPED

    @property
    def is_failed(self) -> bool:
        return self.outcome is Outcome.FAILED

    @property
    def exit_code(self) -> int:
        return 1 if self.outcome is Outcome.FAILED else 0

    def unwrap(self) -> T:
        if self.outcome is not Outcome.OK or self.value is None:
            raise ValueError(f"Step did not succeed ({self.outcome.value}): {self.detail}")
        return self.value

    def describe(self) -> str:
        if self.outcome is Outcome.SKIPPED:
            return f"skipped: {self.detail}"
        if self.outcome is Outcome.FAILED:
            return f"failed: {self.detail}"
        return f"ok{': ' + self.detail if self.detail else ''}"
