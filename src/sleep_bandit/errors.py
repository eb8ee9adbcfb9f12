"""Error hierarchy and stable error taxonomy.

Corrupt-log errors are fatal: the persisted log cannot be replayed and the
caller has to re-import or repair it. Policy errors are recoverable: the
intent was refused before any event was emitted.
"""

from __future__ import annotations

from typing import Literal

ErrorClass = Literal["corrupt_log", "policy", "other"]


class SleepBanditError(Exception):
    """Base class for all sleep-bandit errors."""


class CorruptLogError(SleepBanditError):
    """The event log is malformed or cannot be replayed."""


class UnknownEventError(CorruptLogError):
    """An event type outside the closed catalog was encountered."""

    def __init__(self, event_type: str):
        super().__init__(f"Unknown event type: {event_type!r}")
        self.event_type = event_type


class PolicyError(SleepBanditError):
    """An intent was refused because its preconditions do not hold."""


class NoEnabledInterventionsError(PolicyError):
    def __init__(self) -> None:
        super().__init__("No enabled interventions to roll; add or re-enable one first")


class NoPendingNightError(PolicyError):
    def __init__(self, action: str):
        super().__init__(f"Cannot {action}: no night is pending")
        self.action = action


class PendingNightExistsError(PolicyError):
    def __init__(self) -> None:
        super().__init__("A night is already pending; record or cancel it first")


class DuplicateNameError(PolicyError):
    def __init__(self, kind: str, name: str):
        super().__init__(f"{kind} {name!r} already exists")
        self.kind = kind
        self.name = name


class InvalidReferenceError(PolicyError):
    def __init__(self, kind: str, index: int):
        super().__init__(f"No {kind} at index {index}")
        self.kind = kind
        self.index = index


def classify_error(exc: BaseException) -> ErrorClass:
    if isinstance(exc, CorruptLogError):
        return "corrupt_log"
    if isinstance(exc, PolicyError):
        return "policy"
    return "other"

