"""
Core game logic: guess submission and the daily read path
"""
from __future__ import annotations

import logging
import re
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .const import DEFAULT_MAX_ATTEMPTS, NO_PUZZLE_MESSAGE, PUZZLE_TYPE_REBUS
from .dates import day_start, is_date_key, today_key
from .errors import NotFoundError
from .ledger import AttemptLedger
from .models import Attempt
from .puzzle_cache import fallback_puzzle
from .scoring import calculate_new_stats
from .storage import PuzzleStore, UserStatsStore

_LOGGER = logging.getLogger(__name__)


def normalize_answer(answer: str) -> str:
    """Lowercase, keeping letters and digits only."""
    return re.sub(r"[^a-z0-9]", "", (answer or "").lower())


def check_answer(guess: str, answer: str) -> bool:
    """Case, whitespace and punctuation are ignored."""
    normalized = normalize_answer(guess)
    return bool(normalized) and normalized == normalize_answer(answer)


def attempt_to_dict(attempt: Attempt | None) -> dict | None:
    if attempt is None:
        return None
    return {
        "id": attempt.id,
        "puzzleId": attempt.puzzle_id,
        "attemptedAnswer": attempt.attempted_answer,
        "isCorrect": bool(attempt.is_correct),
        "abandoned": bool(attempt.abandoned),
        "attemptNumber": attempt.attempt_number,
        "maxAttempts": attempt.max_attempts,
        "attemptedAt": attempt.attempted_at.isoformat() if attempt.attempted_at else None,
        "timeSpentSeconds": attempt.time_spent_seconds,
    }


def empty_game_data() -> dict:
    """Payload served when no puzzle can be produced."""
    return {
        "id": None,
        "puzzle": NO_PUZZLE_MESSAGE,
        "puzzleType": PUZZLE_TYPE_REBUS,
        "difficulty": None,
        "answer": "",
        "explanation": "",
        "hints": [],
        "isCompleted": False,
        "shouldRedirect": False,
        "error": True,
    }


class GameManager:
    """Manages guesses and per-user game state"""

    def __init__(self, db: AsyncSession, cache=None):
        self.db = db
        self.cache = cache
        self.ledger = AttemptLedger(db)
        self.puzzles = PuzzleStore(db)
        self.stats = UserStatsStore(db)

    async def _puzzle_answer(self, puzzle_id: str) -> tuple[str, Optional[int]]:
        """Stored answer and difficulty for a puzzle id (fallback ids included)."""
        result = await self.puzzles.find_by_id(puzzle_id)
        if result.success and result.data is not None:
            return result.data.answer, result.data.difficulty

        if puzzle_id.startswith("fallback-") and is_date_key(puzzle_id[len("fallback-"):]):
            fallback = fallback_puzzle(puzzle_id[len("fallback-"):])
            return fallback["answer"], fallback["difficulty"]

        if not result.success:
            raise result.error
        raise NotFoundError("Puzzle", puzzle_id)

    async def submit_guess(
        self,
        user_id: str,
        puzzle_id: str,
        answer: str,
        time_spent_seconds: Optional[int] = None,
        hints_used: int = 0,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        abandoned: bool = False,
        client_is_correct: Optional[bool] = None,
    ) -> dict:
        """
        Record a guess against a puzzle

        Correctness is always recomputed from the stored answer. The first
        final attempt of the day (correct or abandoned) updates the user's
        stats; any guess after it the same day is refused.

        Raises:
            NotFoundError: unknown puzzle id
        """
        correct_answer, difficulty = await self._puzzle_answer(puzzle_id)

        final = await self.ledger.find_final_attempt(user_id, today_key())
        if final is not None:
            return self._already_completed(final)

        is_correct = check_answer(answer, correct_answer)

        if client_is_correct is not None and client_is_correct != is_correct:
            _LOGGER.warning(
                "Client reported isCorrect=%s for user %s on %s, server says %s",
                client_is_correct, user_id, puzzle_id, is_correct,
            )

        previous = await self.ledger.attempts_for(user_id, puzzle_id)
        attempt_number = len(previous) + 1
        abandoned = bool(abandoned or (not is_correct and attempt_number >= max_attempts))

        attempt = Attempt(
            id=str(uuid.uuid4()),
            puzzle_id=puzzle_id,
            attempted_answer=(answer or "")[:200],
            is_correct=is_correct,
            abandoned=abandoned and not is_correct,
            attempt_number=attempt_number,
            max_attempts=max_attempts,
            time_spent_seconds=time_spent_seconds,
            hints_used=hints_used,
            difficulty=difficulty,
        )

        result = await self.ledger.record_attempt(user_id, day_start(today_key()), attempt)
        if not result.success:
            return self._already_completed(result.attempt)

        response = {
            "success": True,
            "isCorrect": is_correct,
            "isFinal": bool(attempt.is_final),
            "attemptNumber": attempt_number,
            "remainingAttempts": 0 if attempt.is_final else max(max_attempts - attempt_number, 0),
            "attempt": attempt_to_dict(attempt),
        }

        if attempt.is_final:
            response["correctAnswer"] = correct_answer
            response["stats"] = await self.update_stats(
                user_id,
                won=is_correct,
                attempts=attempt_number,
                time_spent=time_spent_seconds,
                difficulty=difficulty,
                max_attempts=max_attempts,
                hints_used=hints_used,
            )
        return response

    @staticmethod
    def _already_completed(final: Attempt | None) -> dict:
        return {
            "success": False,
            "alreadyCompleted": True,
            "message": "You have already completed today's puzzle",
            "attempt": attempt_to_dict(final),
        }

    async def update_stats(self, user_id: str, **game_result) -> dict:
        """Apply a finished game to the user's stats, returning the summary"""
        current = await self.stats.get(user_id)
        values, summary = calculate_new_stats(current, **game_result)

        if current is None:
            current = await self.stats.create_initial(user_id)
        for name, value in values.items():
            setattr(current, name, value)
        await self.stats.save(current)

        _LOGGER.info(
            "User %s finished a game: won=%s, +%d points, streak %d",
            user_id, game_result.get("won"), summary["pointsEarned"], summary["streak"],
        )
        return summary

    async def fetch_game_data(self, user_id: Optional[str] = None) -> dict:
        """
        Today's puzzle for a player

        `shouldRedirect` is set once the player has a final attempt today.
        Any failure degrades to the "no puzzle available" payload.
        """
        try:
            daily = await self.cache.get_daily_puzzle(today_key())
            has_attempt, was_successful, _ = (
                await self.ledger.has_today_attempt(user_id) if user_id else (False, False, None)
            )
        except Exception:
            _LOGGER.exception("Failed to fetch today's puzzle")
            return empty_game_data()

        puzzle = daily.puzzle
        data = {
            "id": puzzle["id"],
            "puzzle": puzzle["puzzle"],
            "puzzleType": puzzle["puzzleType"],
            "difficulty": puzzle["difficulty"],
            "answer": puzzle["answer"],
            "explanation": puzzle["explanation"],
            "hints": puzzle["hints"],
            "category": puzzle["category"],
            "isCompleted": has_attempt,
            "wasSuccessful": was_successful,
            "shouldRedirect": has_attempt,
        }
        if "rebusPuzzle" in puzzle:
            data["rebusPuzzle"] = puzzle["rebusPuzzle"]
        return data
