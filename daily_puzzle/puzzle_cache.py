"""Daily puzzle cache: at most one persisted puzzle per UTC day."""
from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass

from . import config
from .const import (
    DAILY_DIFFICULTIES,
    FALLBACK_PUZZLES,
    GENERIC_PUZZLE_TEXT,
    PUZZLE_TYPE_LOGIC_GRID,
    PUZZLE_TYPE_REBUS,
)
from .dates import day_of_year, day_start, sunday_first_weekday, today_key
from .errors import AIError, DatabaseError
from .models import Puzzle
from .storage import PuzzleStore

_LOGGER = logging.getLogger(__name__)

READ_RETRIES = 3
GENERATION_QUALITY_THRESHOLD = 70
GENERATION_ATTEMPTS = 3


@dataclass
class DailyPuzzleResult:
    """The day's puzzle in read shape, plus where it came from."""

    puzzle: dict
    from_database: bool = False
    generated: bool = False
    fallback: bool = False

    @property
    def puzzle_id(self) -> str:
        return self.puzzle["id"]


def daily_difficulty(date_key: str) -> int:
    """Difficulty for a day: Sun..Sat = 5, 4, 5, 7, 6, 5, 4."""
    return DAILY_DIFFICULTIES[sunday_first_weekday(date_key)]


def daily_puzzle_id(date_key: str) -> str:
    """Deterministic id for a day's puzzle."""
    return "daily-" + hashlib.sha1(date_key.encode("utf-8")).hexdigest()[:16]


def fallback_index(date_key: str) -> int:
    return day_of_year(date_key) % len(FALLBACK_PUZZLES)


def fallback_puzzle(date_key: str) -> dict:
    """Pre-authored puzzle for a day, rotated by day of year. Never persisted."""
    index = fallback_index(date_key)
    data = FALLBACK_PUZZLES[index]
    return {
        "id": f"fallback-{date_key}",
        "puzzle": data["puzzle"],
        "rebus_puzzle": data["puzzle"],
        "puzzle_type": PUZZLE_TYPE_REBUS,
        "answer": data["answer"],
        "difficulty": data["difficulty"],
        "category": data["category"],
        "explanation": data["explanation"],
        "hints": list(data["hints"]),
        "metadata": {"fallback": True, "fallbackIndex": index},
        "daily_date": date_key,
        "published_at": day_start(date_key),
    }


def _collapse(value: str) -> str:
    return " ".join(value.split()).lower()


def repair_display_text(puzzle: dict) -> str:
    """Display text that does not give the answer away.

    Generated puzzles occasionally come back with the answer as the display
    text. Rebuild it from the clues, then the logic-grid categories, then a
    generic instruction.
    """
    text = puzzle.get("puzzle") or ""
    if _collapse(text) != _collapse(puzzle.get("answer") or ""):
        return text

    metadata = puzzle.get("metadata") or {}
    _LOGGER.warning("Puzzle display text equals its answer, rebuilding it")
    if metadata.get("clues"):
        return "\n\n".join(metadata["clues"])
    if puzzle.get("puzzle_type") == PUZZLE_TYPE_LOGIC_GRID and metadata.get("categories"):
        return "\n".join(metadata["categories"])
    return GENERIC_PUZZLE_TEXT


def format_puzzle(puzzle: Puzzle | dict) -> dict:
    """Read shape of a stored or fallback puzzle."""
    if isinstance(puzzle, Puzzle):
        data = {
            "id": puzzle.id,
            "puzzle": puzzle.display_text,
            "puzzle_type": puzzle.puzzle_type,
            "answer": puzzle.answer,
            "difficulty": puzzle.difficulty,
            "category": puzzle.category,
            "explanation": puzzle.explanation,
            "hints": puzzle.hints or [],
            "metadata": puzzle.puzzle_metadata or {},
            "daily_date": puzzle.daily_date,
            "published_at": puzzle.published_at,
        }
    else:
        data = puzzle

    published_at = data.get("published_at")
    formatted = {
        "id": data["id"],
        "puzzle": data.get("puzzle") or data.get("rebus_puzzle") or "",
        "puzzleType": data.get("puzzle_type") or PUZZLE_TYPE_REBUS,
        "answer": data["answer"],
        "difficulty": data.get("difficulty"),
        "category": data.get("category"),
        "explanation": data.get("explanation"),
        "hints": list(data.get("hints") or []),
        "metadata": data.get("metadata") or {},
        "dailyDate": data.get("daily_date"),
        "publishedAt": published_at.isoformat() if published_at else None,
    }
    if formatted["puzzleType"] == PUZZLE_TYPE_REBUS:
        formatted["rebusPuzzle"] = formatted["puzzle"]
    return formatted


class DailyPuzzleCache:
    """Returns the day's puzzle, generating and storing it on first request.

    Concurrent first requests may both generate; the per-day unique key lets
    exactly one insert win and the others return the winner.
    """

    def __init__(
        self,
        database,
        generator,
        ai_client=None,
        default_type: str | None = None,
        read_retries: int = READ_RETRIES,
        retry_delay: float = 0.1,
        fallback_retry_seconds: float | None = None,
    ) -> None:
        self.database = database
        self.generator = generator
        self.ai_client = ai_client
        self.default_type = default_type or config.DEFAULT_PUZZLE_TYPE
        self.read_retries = read_retries
        self.retry_delay = retry_delay
        self.fallback_retry_seconds = (
            config.FALLBACK_RETRY_SECONDS if fallback_retry_seconds is None else fallback_retry_seconds
        )
        # date key -> monotonic time before which generation is not retried
        self._fallback_until: dict[str, float] = {}
        self._background: set[asyncio.Task] = set()

    async def _read_day(self, date_key: str) -> Puzzle | None:
        """Look up the day's puzzle, retrying transient store failures.

        Raises:
            DatabaseError: every read failed
        """
        error = None
        for attempt in range(1, self.read_retries + 1):
            async with self.database.session() as session:
                result = await PuzzleStore(session).find_for_day(date_key)
            if result.success:
                return result.data
            error = result.error
            _LOGGER.warning(
                "Puzzle lookup for %s failed (attempt %d/%d): %s",
                date_key, attempt, self.read_retries, error.message,
            )
            if attempt < self.read_retries:
                await asyncio.sleep(self.retry_delay * attempt)
        raise error

    async def get_daily_puzzle(
        self,
        date_key: str | None = None,
        puzzle_type: str | None = None,
        force: bool = False,
    ) -> DailyPuzzleResult:
        """Get (or create) the puzzle for a UTC day.

        After a failed generation the fallback is served without calling the
        AI again for `fallback_retry_seconds`, unless `force` is set.

        Raises:
            DatabaseError: the store could not be read; nothing is generated
        """
        date_key = date_key or today_key()

        try:
            existing = await self._read_day(date_key)
        except DatabaseError:
            _LOGGER.error("Refusing to generate a puzzle for %s: store unreadable", date_key)
            raise

        if existing is not None:
            return DailyPuzzleResult(format_puzzle(existing), from_database=True)

        if not force and time.monotonic() < self._fallback_until.get(date_key, 0.0):
            return DailyPuzzleResult(format_puzzle(fallback_puzzle(date_key)), fallback=True)

        puzzle_type = puzzle_type or self.default_type
        try:
            generation = await self.generator.generate(
                target_difficulty=daily_difficulty(date_key),
                puzzle_type=puzzle_type,
                require_novelty=True,
                quality_threshold=GENERATION_QUALITY_THRESHOLD,
                max_attempts=GENERATION_ATTEMPTS,
            )
        except AIError as e:
            _LOGGER.error("Puzzle generation failed for %s, using fallback: %s", date_key, e)
            self._fallback_until[date_key] = time.monotonic() + self.fallback_retry_seconds
            return DailyPuzzleResult(format_puzzle(fallback_puzzle(date_key)), fallback=True)

        self._fallback_until.pop(date_key, None)
        generated = generation.puzzle
        display_text = repair_display_text(generated)
        metadata = dict(generated.get("metadata") or {})
        metadata.setdefault("qualityScore", generation.quality_score)
        metadata.setdefault("uniquenessScore", generation.uniqueness_score)
        metadata["tokensUsed"] = generation.tokens_used

        puzzle = Puzzle(
            id=daily_puzzle_id(date_key),
            puzzle=display_text,
            rebus_puzzle=display_text if generated["puzzle_type"] == PUZZLE_TYPE_REBUS else None,
            puzzle_type=generated["puzzle_type"],
            answer=generated["answer"],
            difficulty=generated.get("difficulty") or daily_difficulty(date_key),
            category=generated.get("category"),
            explanation=generated.get("explanation"),
            hints=list(generated.get("hints") or []),
            puzzle_metadata=metadata,
            daily_date=date_key,
            published_at=day_start(date_key),
            active=True,
        )
        formatted = format_puzzle(puzzle)

        async with self.database.session() as session:
            store = PuzzleStore(session)
            created = await store.create(puzzle)
            if created.success:
                _LOGGER.info("Stored puzzle %s for %s", puzzle.id, date_key)
                self._schedule_embedding(puzzle.id, f"{display_text} {puzzle.answer}")
                return DailyPuzzleResult(formatted, generated=True)

            if created.error.code != "UNIQUE_VIOLATION":
                _LOGGER.error("Could not store puzzle for %s: %s", date_key, created.error.message)
                return DailyPuzzleResult(formatted, generated=True)

            winner = await store.find_by_daily_date(date_key)

        if winner.success and winner.data is not None and winner.data.active:
            _LOGGER.info("Puzzle for %s was stored concurrently, using %s", date_key, winner.data.id)
            return DailyPuzzleResult(format_puzzle(winner.data), from_database=True)

        _LOGGER.warning("Day %s is taken by an inactive puzzle, serving generated puzzle unsaved", date_key)
        return DailyPuzzleResult(formatted, generated=True)

    def _schedule_embedding(self, puzzle_id: str, text: str) -> None:
        if self.ai_client is None or not hasattr(self.ai_client, "embed"):
            return
        task = asyncio.create_task(self._attach_embedding(puzzle_id, text))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _attach_embedding(self, puzzle_id: str, text: str) -> None:
        try:
            embedding = await self.ai_client.embed(text)
        except AIError as e:
            _LOGGER.warning("Embedding for puzzle %s failed: %s", puzzle_id, e.message)
            return

        async with self.database.session() as session:
            result = await PuzzleStore(session).update_embedding(puzzle_id, embedding)
        if not result.success:
            _LOGGER.warning("Could not attach embedding to %s: %s", puzzle_id, result.error.message)

    async def wait_background(self) -> None:
        """Wait for pending embedding tasks."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
