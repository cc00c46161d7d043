"""
progression.errors — Error Taxonomy
====================================

Every failure the engine reports falls into one of four buckets:

* :class:`ValidationError` — the caller sent something invalid.  Never retried.
* :class:`NotFoundError` — a referenced user does not exist.
* :class:`TransientStoreError` — the store timed out or a compare-and-swap
  kept losing.  Raised only after the bounded internal retries ran out.
* :class:`ConsistencyViolation` — cached level fields disagree with
  ``total_experience``.  Logged and repaired, never shown to end users.

The built-in base classes are kept (``ValueError``, ``LookupError``,
``RuntimeError``) so callers that already catch those keep working.
"""

from __future__ import annotations


class ProgressionError(Exception):
    """Base class for every error raised by the progression engine."""


class ValidationError(ProgressionError, ValueError):
    """Invalid user id, non-positive amount, malformed scope, bad setting."""


class RewardLimitError(ValidationError):
    """An ad reward was refused by the daily cap or the cooldown window."""

    def __init__(self, message: str, *, remaining_minutes: int = 0) -> None:
        super().__init__(message)
        self.remaining_minutes = remaining_minutes


class NotFoundError(ProgressionError, LookupError):
    """A referenced user (or record) is absent."""


class TransientStoreError(ProgressionError, RuntimeError):
    """Timeout, contention or transaction conflict on the underlying store."""


class ConsistencyViolation(ProgressionError):
    """Derived stats fields found inconsistent with ``total_experience``."""

    def __init__(self, user_id: str, stored: dict, expected: dict) -> None:
        super().__init__(
            f"Derived stats for user {user_id} drifted: "
            f"stored={stored} expected={expected}"
        )
        self.user_id = user_id
        self.stored = stored
        self.expected = expected
