"""Gamification error taxonomy.

Errors are raised by the services and propagate to the caller; the HTTP layer
maps ``status_code`` onto the response.
"""

from __future__ import annotations


class GamificationError(Exception):
    """Base class for all gamification errors."""

    status_code = 400


class InvalidDeltaError(GamificationError):
    """Zero or non-integer point delta."""


class UnknownReasonCodeError(GamificationError):
    """Point award with a reason outside ReasonCode."""


class OutOfOrderActivityError(GamificationError):
    """Streak touch dated before the stored last study date."""

    status_code = 409


class AchievementCatalogEmptyError(GamificationError):
    """Evaluation requested before the achievement catalog was seeded."""

    status_code = 409


class UserNotFoundError(GamificationError):
    status_code = 404
