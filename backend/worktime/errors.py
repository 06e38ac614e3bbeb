from __future__ import annotations

from typing import Optional


class TrackerError(Exception):
    """Base class for every failure raised by the tracker engine."""

    rule: str = "tracker.error"

    def __init__(self, message: str, *, rule: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if rule is not None:
            self.rule = rule

    def to_detail(self) -> dict[str, str]:
        return {"rule": self.rule, "message": self.message}

    def __str__(self) -> str:
        return f"{self.rule}: {self.message}"


class ValidationError(TrackerError):
    """An invariant would be violated by a write; the ledger is unchanged."""

    rule = "validation"

    def __init__(self, rule: str, message: str) -> None:
        super().__init__(message, rule=rule)


class NotFoundError(TrackerError):
    rule = "not_found"


class InvalidTaskError(TrackerError):
    rule = "timer.invalid_task"


class ConcurrentMealBreakError(TrackerError):
    rule = "meal_break.already_open"


class PersistenceError(TrackerError):
    """The durable store failed; in-memory state was restored to the last good snapshot."""

    rule = "persistence.write_failed"


class UnsupportedSchemaError(TrackerError):
    rule = "persistence.unsupported_schema"
