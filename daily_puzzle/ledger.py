"""Attempt ledger: per-guess records and the once-per-day final lock."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .dates import today_key, utc_now
from .errors import UniqueConstraintError, parse_db_error
from .models import Attempt

_LOGGER = logging.getLogger(__name__)


@dataclass
class LedgerResult:
    """Outcome of recording an attempt.

    `success` is False when a final attempt for the same user and day was
    already on record; `attempt` is then that existing record.
    """

    success: bool
    attempt: Attempt | None


class AttemptLedger:
    """Records guesses and enforces one final attempt per user per UTC day."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def find_final_attempt(self, user_id: str, day_key: str) -> Attempt | None:
        result = await self.db.execute(
            select(Attempt)
            .where(Attempt.user_id == user_id)
            .where(Attempt.attempt_day == day_key)
            .where(Attempt.is_final.is_(True))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def attempts_for(self, user_id: str, puzzle_id: str) -> list[Attempt]:
        """All attempts a user made on a puzzle, oldest first."""
        result = await self.db.execute(
            select(Attempt)
            .where(Attempt.user_id == user_id)
            .where(Attempt.puzzle_id == puzzle_id)
            .order_by(Attempt.attempted_at)
        )
        return list(result.scalars().all())

    async def record_attempt(self, user_id: str, day_start: datetime, attempt: Attempt) -> LedgerResult:
        """Insert an attempt, atomically for final ones.

        A final attempt (correct or abandoned) is refused when one already
        exists for the same UTC day. Two concurrent final inserts race on the
        partial unique index; the loser rolls back and gets the winner's
        record with success=False.

        Raises:
            DatabaseError: any other store failure.
        """
        day_key = today_key(day_start)
        attempt.user_id = user_id
        attempt.attempt_day = day_key
        attempt.attempted_at = attempt.attempted_at or utc_now()
        attempt.is_final = bool(attempt.is_correct or attempt.abandoned)
        if attempt.is_final and attempt.completed_at is None:
            attempt.completed_at = attempt.attempted_at

        if attempt.is_final:
            existing = await self.find_final_attempt(user_id, day_key)
            if existing is not None:
                _LOGGER.info("User %s already has a final attempt for %s", user_id, day_key)
                return LedgerResult(False, existing)

        try:
            self.db.add(attempt)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            error = parse_db_error(e)
            if attempt.is_final and isinstance(error, UniqueConstraintError):
                winner = await self.find_final_attempt(user_id, day_key)
                _LOGGER.info("Concurrent final attempt for user %s on %s lost the race", user_id, day_key)
                return LedgerResult(False, winner)
            raise error from e

        return LedgerResult(True, attempt)

    async def has_today_attempt(self, user_id: str, now: datetime | None = None) -> tuple[bool, bool, str | None]:
        """Whether the user finished today's puzzle.

        Returns:
            (has_attempt, was_successful, puzzle_id)
        """
        final = await self.find_final_attempt(user_id, today_key(now))
        if final is None:
            return False, False, None
        return True, bool(final.is_correct), final.puzzle_id
