"""
keystone.errors — Error taxonomy
================================

Every failure the engine reports is one of these.  None of them is fatal to
the process; callers decide what to do (reject input, retry, show a 409).
"""

from __future__ import annotations


class KeystoneError(Exception):
    """Base class for all engine errors."""


class ValidationError(KeystoneError):
    """Malformed input rejected at the boundary.  Nothing was written."""


class UnknownMilestoneType(ValidationError):
    def __init__(self, milestone_type: object) -> None:
        super().__init__(f"Unknown milestone type: {milestone_type!r}")
        self.milestone_type = milestone_type


class InvalidTransition(KeystoneError):
    """A state-machine precondition was violated.  State is unchanged."""

    def __init__(self, machine: str, current: str, attempted: str) -> None:
        super().__init__(
            f"{machine}: cannot {attempted} from state '{current}'"
        )
        self.machine = machine
        self.current = current
        self.attempted = attempted


class StorageUnavailable(KeystoneError):
    """The durability layer failed.  Retryable; the caller owns backoff."""

    retryable = True
