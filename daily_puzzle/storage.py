"""Data-access helpers for the daily puzzle server."""
from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy import delete, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .const import INITIAL_STREAK_FREEZES, SUBSCRIPTION_ACTIVE_DAYS
from .dates import day_bounds, utc_now
from .errors import DbResult, NotFoundError, parse_db_error, wrap_db_operation
from .models import AIDecision, AIErrorRecord, Attempt, PushSubscription, Puzzle, User, UserStats

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class _Store:
    """Shared session handling for the stores below."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _run(self, operation: Callable[[], Awaitable[T]]) -> DbResult[T]:
        """Run an operation, rolling the session back if it failed."""
        result = await wrap_db_operation(operation)
        if not result.success:
            await self.db.rollback()
        return result


class PuzzleStore(_Store):
    """Puzzles, keyed by id and by published UTC day."""

    async def find_for_day(self, date_key: str) -> DbResult[Puzzle | None]:
        """Active puzzle published within the given UTC day, if any."""
        start, end = day_bounds(date_key)

        async def _find():
            result = await self.db.execute(
                select(Puzzle)
                .where(Puzzle.published_at >= start)
                .where(Puzzle.published_at < end)
                .where(Puzzle.active.is_(True))
                .order_by(Puzzle.created_at)
                .limit(1)
            )
            return result.scalar_one_or_none()

        return await self._run(_find)

    async def find_by_id(self, puzzle_id: str) -> DbResult[Puzzle | None]:
        async def _find():
            return await self.db.get(Puzzle, puzzle_id)

        return await self._run(_find)

    async def find_by_daily_date(self, date_key: str) -> DbResult[Puzzle | None]:
        """Puzzle holding the day's unique slot, active or not."""
        async def _find():
            result = await self.db.execute(select(Puzzle).where(Puzzle.daily_date == date_key))
            return result.scalar_one_or_none()

        return await self._run(_find)

    async def create(self, puzzle: Puzzle) -> DbResult[Puzzle]:
        """Insert a puzzle; a duplicate day comes back as UNIQUE_VIOLATION."""
        async def _create():
            self.db.add(puzzle)
            await self.db.commit()
            return puzzle

        return await self._run(_create)

    async def recent(self, limit: int = 30) -> DbResult[list[Puzzle]]:
        async def _recent():
            result = await self.db.execute(
                select(Puzzle).order_by(desc(Puzzle.published_at)).limit(limit)
            )
            return list(result.scalars().all())

        return await self._run(_recent)

    async def update_embedding(self, puzzle_id: str, embedding: list[float]) -> DbResult[bool]:
        async def _update():
            puzzle = await self.db.get(Puzzle, puzzle_id)
            if puzzle is None:
                raise NotFoundError("Puzzle", puzzle_id)
            puzzle.embedding = embedding
            await self.db.commit()
            return True

        return await self._run(_update)

    async def delete(self, puzzle_id: str) -> DbResult[bool]:
        """Administrative delete; returns False when nothing matched."""
        async def _delete():
            result = await self.db.execute(delete(Puzzle).where(Puzzle.id == puzzle_id))
            await self.db.commit()
            return result.rowcount > 0

        return await self._run(_delete)


class UserStore(_Store):
    """Registered and guest users."""

    async def get(self, user_id: str) -> User | None:
        return await self.db.get(User, user_id)

    async def _first(self, *criteria) -> User | None:
        result = await self.db.execute(select(User).where(*criteria))
        return result.scalar_one_or_none()

    async def find_by_email(self, email: str) -> User | None:
        return await self._first(func.lower(User.email) == email.lower())

    async def find_by_username(self, username: str) -> User | None:
        return await self._first(User.username == username)

    async def find_by_session_token(self, token: str) -> User | None:
        return await self._first(User.session_token == token)

    async def find_by_guest_token(self, token: str) -> User | None:
        return await self._first(User.guest_token == token, User.is_guest.is_(True))

    async def save(self, user: User) -> User:
        """Insert or update a user, normalizing store errors."""
        try:
            self.db.add(user)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            raise parse_db_error(e) from e
        return user


class UserStatsStore(_Store):
    """Cumulative per-user statistics and leaderboards."""

    async def get(self, user_id: str) -> UserStats | None:
        result = await self.db.execute(select(UserStats).where(UserStats.user_id == user_id))
        return result.scalar_one_or_none()

    async def get_or_create(self, user_id: str) -> UserStats:
        stats = await self.get(user_id)
        if stats is None:
            stats = await self.create_initial(user_id)
        return stats

    async def create_initial(self, user_id: str) -> UserStats:
        """Fresh stats row; new players start with one streak freeze."""
        stats = UserStats(
            id=str(uuid.uuid4()),
            user_id=user_id,
            points=0,
            streak=0,
            max_streak=0,
            total_games=0,
            wins=0,
            level=1,
            streak_freezes=INITIAL_STREAK_FREEZES,
        )
        return await self.save(stats)

    async def save(self, stats: UserStats) -> UserStats:
        try:
            self.db.add(stats)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            raise parse_db_error(e) from e
        return stats

    async def points_leaderboard(self, limit: int = 10, timeframe: str = "alltime") -> list[dict]:
        """Top players by points.

        `alltime` ranks on cumulative stats; `daily`/`weekly`/`monthly` rank on
        games won within the window, using each winning attempt's day.
        """
        if timeframe == "alltime":
            result = await self.db.execute(
                select(UserStats, User.username)
                .join(User, User.id == UserStats.user_id, isouter=True)
                .order_by(desc(UserStats.points), desc(UserStats.streak))
                .limit(limit)
            )
            return [
                {
                    "rank": rank,
                    "userId": stats.user_id,
                    "username": username or "Anonymous",
                    "points": stats.points,
                    "streak": stats.streak,
                    "level": stats.level,
                }
                for rank, (stats, username) in enumerate(result.all(), start=1)
            ]

        days = {"daily": 1, "weekly": 7, "monthly": 30}.get(timeframe)
        if days is None:
            raise ValueError(f"Unknown timeframe: {timeframe}")

        since = utc_now() - timedelta(days=days)
        wins = func.count(Attempt.id).label("wins")
        result = await self.db.execute(
            select(Attempt.user_id, User.username, wins)
            .join(User, User.id == Attempt.user_id, isouter=True)
            .where(Attempt.is_correct.is_(True))
            .where(Attempt.attempted_at >= since)
            .group_by(Attempt.user_id, User.username)
            .order_by(desc(wins))
            .limit(limit)
        )
        return [
            {
                "rank": rank,
                "userId": user_id,
                "username": username or "Anonymous",
                "wins": count,
            }
            for rank, (user_id, username, count) in enumerate(result.all(), start=1)
        ]

    async def streak_leaderboard(self, limit: int = 10) -> list[dict]:
        result = await self.db.execute(
            select(UserStats, User.username)
            .join(User, User.id == UserStats.user_id, isouter=True)
            .where(UserStats.streak > 0)
            .order_by(desc(UserStats.streak), desc(UserStats.max_streak))
            .limit(limit)
        )
        return [
            {
                "rank": rank,
                "userId": stats.user_id,
                "username": username or "Anonymous",
                "streak": stats.streak,
                "maxStreak": stats.max_streak,
            }
            for rank, (stats, username) in enumerate(result.all(), start=1)
        ]

    async def rank_of(self, user_id: str) -> int | None:
        """1-based points rank of a user, or None without stats."""
        stats = await self.get(user_id)
        if stats is None:
            return None
        result = await self.db.execute(
            select(func.count(UserStats.id)).where(UserStats.points > stats.points)
        )
        return result.scalar_one() + 1


class SubscriptionStore(_Store):
    """Web-push subscriptions."""

    async def upsert(
        self,
        endpoint: str,
        p256dh: str,
        auth: str,
        user_id: str | None = None,
        user_agent: str | None = None,
    ) -> DbResult[PushSubscription]:
        """Store a subscription, refreshing keys when the endpoint is known."""
        async def _upsert():
            result = await self.db.execute(
                select(PushSubscription).where(PushSubscription.endpoint == endpoint)
            )
            subscription = result.scalar_one_or_none()
            if subscription is None:
                subscription = PushSubscription(id=str(uuid.uuid4()), endpoint=endpoint)
                self.db.add(subscription)
            subscription.p256dh = p256dh
            subscription.auth = auth
            subscription.user_id = user_id or subscription.user_id
            subscription.user_agent = user_agent
            subscription.updated_at = utc_now()
            await self.db.commit()
            return subscription

        return await self._run(_upsert)

    async def active(self, days: int = SUBSCRIPTION_ACTIVE_DAYS) -> DbResult[list[PushSubscription]]:
        """Subscriptions refreshed within the last `days` days."""
        since = utc_now() - timedelta(days=days)

        async def _active():
            result = await self.db.execute(
                select(PushSubscription).where(PushSubscription.updated_at >= since)
            )
            return list(result.scalars().all())

        return await self._run(_active)

    async def delete_endpoint(self, endpoint: str) -> DbResult[bool]:
        async def _delete():
            result = await self.db.execute(
                delete(PushSubscription).where(PushSubscription.endpoint == endpoint)
            )
            await self.db.commit()
            return result.rowcount > 0

        return await self._run(_delete)


class DecisionStore(_Store):
    """AI decision and error records."""

    async def add_decision(self, record: dict[str, Any]) -> DbResult[AIDecision]:
        async def _add():
            decision = AIDecision(id=str(uuid.uuid4()), **record)
            self.db.add(decision)
            await self.db.commit()
            return decision

        return await self._run(_add)

    async def add_error(self, record: dict[str, Any]) -> DbResult[AIErrorRecord]:
        async def _add():
            error = AIErrorRecord(id=str(uuid.uuid4()), **record)
            self.db.add(error)
            await self.db.commit()
            return error

        return await self._run(_add)

