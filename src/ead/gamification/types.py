"""Closed enumerations shared by the gamification services."""

from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    PROFESSOR = "professor"
    STUDENT = "student"


class ReasonCode(StrEnum):
    """Why a ledger entry exists."""

    LESSON_COMPLETE = "lesson_complete"
    COURSE_COMPLETE = "course_complete"
    QUIZ_PASS = "quiz_pass"
    CERTIFICATE_EARNED = "certificate_earned"
    STREAK_BONUS = "streak_bonus"
    FORUM_PARTICIPATION = "forum_participation"
    HELPFUL_ANSWER = "helpful_answer"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    ACHIEVEMENT_UNLOCKED = "achievement_unlocked"


class ActivityKind(StrEnum):
    """Domain events emitted by the course/lesson/quiz/forum side of the platform."""

    LESSON_COMPLETE = "lesson_complete"
    COURSE_COMPLETE = "course_complete"
    QUIZ_PASS = "quiz_pass"
    CERTIFICATE_EARNED = "certificate_earned"
    FORUM_PARTICIPATION = "forum_participation"
    HELPFUL_ANSWER = "helpful_answer"

    @property
    def reason(self) -> ReasonCode:
        return ReasonCode(self.value)


class AchievementType(StrEnum):
    COURSE_COMPLETE = "course_complete"
    STREAK = "streak"
    TIME_SPENT = "time_spent"
    FIRST_LESSON = "first_lesson"
    TOP_STUDENT = "top_student"


class LeaderboardWindow(StrEnum):
    ALL_TIME = "all_time"
    WEEKLY = "weekly"
