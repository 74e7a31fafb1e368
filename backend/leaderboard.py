"""Cross-user leaderboard: one entry per owner, ranked by best current streak."""

import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel

from backend import dates
from backend.errors import StoreUnavailableError, ValidationError
from backend.storage import STORE_ERRORS

logger = logging.getLogger(__name__)

DEFAULT_TOP_N = 20
UNKNOWN_USER = "Unknown User"


class OwnerBest(BaseModel):
    owner: str
    best_current_streak: int
    habit: Optional[str] = None


class LeaderboardEntry(BaseModel):
    rank: int
    owner: str
    display_name: str
    best_current_streak: int
    habit: Optional[str] = None


class CommunityStats(BaseModel):
    total_habits: int = 0
    tracked_users: int = 0
    active_today: int = 0
    top_streak: int = 0


class Leaderboard(BaseModel):
    entries: List[LeaderboardEntry]
    stats: CommunityStats
    generated_at: str


def _best_by_owner(habits: Iterable[Dict[str, Any]]) -> Dict[str, OwnerBest]:
    # Dicts keep first-appearance order (creation order from the store), the tie-break for equal bests.
    best: Dict[str, OwnerBest] = {}
    for habit in habits:
        owner = habit.get("user_id")
        if not owner:
            continue
        streak = int(habit.get("current_streak") or 0)
        seen = best.get(owner)
        if seen is None or streak > seen.best_current_streak:
            best[owner] = OwnerBest(owner=owner, best_current_streak=streak, habit=habit.get("name"))
    return best


def rank_owners(habits: Iterable[Dict[str, Any]], top_n: int = DEFAULT_TOP_N) -> List[OwnerBest]:
    if top_n < 1:
        raise ValidationError("top_n must be at least 1")
    rows = list(_best_by_owner(habits).values())
    rows.sort(key=lambda r: r.best_current_streak, reverse=True)
    return rows[:top_n]


def community_stats(habits: List[Dict[str, Any]], today: date) -> CommunityStats:
    if not habits:
        return CommunityStats()

    best = _best_by_owner(habits)
    active_today = 0
    for habit in habits:
        last = habit.get("last_check_in")
        if not last:
            continue
        try:
            day = dates.calendar_day(last)
        except (TypeError, ValueError):
            logger.warning("Skipping habit %s with unreadable last_check_in %r", habit.get("id"), last)
            continue
        if day == today:
            active_today += 1

    return CommunityStats(
        total_habits=len(habits),
        tracked_users=len(best),
        active_today=active_today,
        top_streak=max((b.best_current_streak for b in best.values()), default=0),
    )


async def _display_names(db: Any, owners: List[str]) -> Dict[str, str]:
    if not owners:
        return {}
    try:
        profiles = await db.profiles.find({"user_id": {"$in": owners}}, {"_id": 0}).to_list(None)
    except (StoreUnavailableError, *STORE_ERRORS) as e:
        logger.warning("Leaderboard enrichment unavailable (%s); using placeholder names", str(e))
        return {}

    names: Dict[str, str] = {}
    for profile in profiles:
        name = (profile.get("display_name") or "").strip()
        if name:
            names[profile["user_id"]] = name
    return names


async def build_leaderboard(
    db: Any,
    top_n: int = DEFAULT_TOP_N,
    now: Optional[datetime] = None,
) -> Leaderboard:
    now = now or dates.now()
    try:
        habits = await db.habits.find({}, {"_id": 0}).sort("created_at", 1).to_list(None)
    except STORE_ERRORS as e:
        logger.warning("Leaderboard habit read failed (%s)", str(e))
        raise StoreUnavailableError("Habit store unavailable") from e

    ranked = rank_owners(habits, top_n)
    names = await _display_names(db, [r.owner for r in ranked])
    missing = [r.owner for r in ranked if r.owner not in names]
    if missing:
        logger.info("Leaderboard: %s ranked owner(s) without a display name", len(missing))

    entries = [
        LeaderboardEntry(
            rank=idx + 1,
            owner=r.owner,
            display_name=names.get(r.owner, UNKNOWN_USER),
            best_current_streak=r.best_current_streak,
            habit=r.habit,
        )
        for idx, r in enumerate(ranked)
    ]

    return Leaderboard(
        entries=entries,
        stats=community_stats(habits, dates.calendar_day(now)),
        generated_at=dates.to_timestamp(now),
    )
