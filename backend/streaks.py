"""Streak lifecycle: how a check-in moves a habit's counters.

``evaluate`` is the pure decision (no I/O). ``check_in`` wraps it in the
read, evaluate, conditional-write cycle against the habits collection.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel

from backend import dates
from backend.errors import (
    ConflictError,
    NotFoundError,
    StoreUnavailableError,
    UnauthorizedError,
    ValidationError,
)
from backend.storage import STORE_ERRORS

logger = logging.getLogger(__name__)

# One re-read after a lost conditional write before giving up with a conflict.
MAX_WRITE_ATTEMPTS = 2


class CheckInOutcome(str, Enum):
    ALREADY_DONE = "AlreadyDone"
    CONTINUED = "Continued"
    RESET = "Reset"


class StreakEvaluation(BaseModel):
    outcome: CheckInOutcome
    current_streak: int
    longest_streak: int
    last_check_in: Optional[str] = None


class CheckInResult(StreakEvaluation):
    habit_id: str


def _counter(habit: Dict[str, Any], field: str) -> int:
    return int(habit.get(field) or 0)


def evaluate(habit: Dict[str, Any], now: datetime) -> StreakEvaluation:
    current = _counter(habit, "current_streak")
    longest = _counter(habit, "longest_streak")
    last_check_in = habit.get("last_check_in")

    today = dates.calendar_day(now)
    last = dates.calendar_day(last_check_in)

    if last == today:
        return StreakEvaluation(
            outcome=CheckInOutcome.ALREADY_DONE,
            current_streak=current,
            longest_streak=longest,
            last_check_in=last_check_in,
        )

    # A first check-in has no streak to break, so it continues from zero.
    if last is None or last == dates.previous_day(today):
        outcome = CheckInOutcome.CONTINUED
        new_current = current + 1
    else:
        outcome = CheckInOutcome.RESET
        new_current = 1

    return StreakEvaluation(
        outcome=outcome,
        current_streak=new_current,
        longest_streak=max(longest, new_current),
        last_check_in=dates.to_timestamp(now),
    )


async def load_owned_habit(db: Any, habit_id: str, owner_id: str) -> Dict[str, Any]:
    habit = await db.habits.find_one({"id": habit_id}, {"_id": 0})
    if habit is None:
        raise NotFoundError("Habit not found")
    if habit.get("user_id") != owner_id:
        raise UnauthorizedError("Habit belongs to another user")
    return habit


async def check_in(
    db: Any,
    habit_id: str,
    owner_id: str,
    now: Optional[datetime] = None,
) -> CheckInResult:
    if not habit_id or not habit_id.strip():
        raise ValidationError("habit_id is required")
    if not owner_id:
        raise ValidationError("owner is required")
    now = now or dates.now()

    try:
        for attempt in range(MAX_WRITE_ATTEMPTS):
            habit = await load_owned_habit(db, habit_id, owner_id)
            result = evaluate(habit, now)

            if result.outcome is CheckInOutcome.ALREADY_DONE:
                logger.info("Check-in no-op: habit=%s owner=%s streak=%s", habit_id, owner_id, result.current_streak)
                return CheckInResult(habit_id=habit_id, **result.model_dump())

            # Matches only if nobody else has written since our read.
            update = await db.habits.update_one(
                {
                    "id": habit_id,
                    "user_id": owner_id,
                    "last_check_in": habit.get("last_check_in"),
                    "current_streak": habit.get("current_streak"),
                },
                {
                    "$set": {
                        "current_streak": result.current_streak,
                        "longest_streak": result.longest_streak,
                        "last_check_in": result.last_check_in,
                    }
                },
            )
            if update.matched_count == 1:
                logger.info(
                    "Check-in %s: habit=%s owner=%s current=%s longest=%s",
                    result.outcome.value,
                    habit_id,
                    owner_id,
                    result.current_streak,
                    result.longest_streak,
                )
                return CheckInResult(habit_id=habit_id, **result.model_dump())

            logger.info("Check-in write lost a race: habit=%s attempt=%s", habit_id, attempt + 1)
    except STORE_ERRORS as e:
        logger.warning("Check-in store failure: habit=%s (%s)", habit_id, str(e))
        raise StoreUnavailableError("Habit store unavailable") from e

    raise ConflictError("Habit was updated concurrently; retry the check-in")
