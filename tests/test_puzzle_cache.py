from __future__ import annotations

import asyncio
import unittest
from unittest import mock

from sqlalchemy import func, select

from daily_puzzle.const import FALLBACK_PUZZLES, GENERIC_PUZZLE_TEXT, PUZZLE_TYPE_LOGIC_GRID, PUZZLE_TYPE_RIDDLE
from daily_puzzle.errors import AIProviderError, DatabaseConnectionError, DatabaseError, DbResult, GenerationError
from daily_puzzle.models import Puzzle
from daily_puzzle.puzzle_cache import (
    DailyPuzzleCache,
    daily_difficulty,
    daily_puzzle_id,
    fallback_index,
    format_puzzle,
    repair_display_text,
)
from daily_puzzle.puzzle_generator import GenerationResult, PuzzleGenerator
from daily_puzzle.storage import PuzzleStore
from tests.support import DatabaseTestCase, StubAIClient, rebus_response


class ScriptedGenerator:
    """Returns canned puzzles, one per call, after an optional delay."""

    def __init__(self, puzzles, delay: float = 0.0) -> None:
        self.puzzles = list(puzzles)
        self.delay = delay
        self.calls = []

    async def generate(self, **kwargs):
        self.calls.append(kwargs)
        if self.delay:
            await asyncio.sleep(self.delay)
        puzzle = self.puzzles.pop(0)
        if isinstance(puzzle, Exception):
            raise puzzle
        return GenerationResult(
            puzzle=puzzle,
            quality_score=90,
            uniqueness_score=95,
            tokens_used=100,
            attempts=1,
            operation_id="op_test",
        )


def generated(answer: str, text: str, puzzle_type: str = "rebus", **metadata) -> dict:
    return {
        "puzzle": text,
        "answer": answer,
        "explanation": "because",
        "category": "test",
        "difficulty": 5,
        "hints": ["one", "two", "three"],
        "puzzle_type": puzzle_type,
        "metadata": metadata,
    }


class HelpersTest(unittest.TestCase):
    def test_daily_difficulty_by_weekday(self) -> None:
        # 2024-06-02 is a Sunday
        week = [daily_difficulty(f"2024-06-{day:02d}") for day in range(2, 9)]
        self.assertEqual(week, [5, 4, 5, 7, 6, 5, 4])

    def test_daily_id_is_deterministic(self) -> None:
        self.assertEqual(daily_puzzle_id("2024-06-01"), daily_puzzle_id("2024-06-01"))
        self.assertNotEqual(daily_puzzle_id("2024-06-01"), daily_puzzle_id("2024-06-02"))
        self.assertTrue(daily_puzzle_id("2024-06-01").startswith("daily-"))

    def test_repair_uses_clues_then_categories_then_generic(self) -> None:
        self.assertEqual(repair_display_text(generated("sun", "☀️")), "☀️")
        self.assertEqual(
            repair_display_text(generated("Ben", " ben ", PUZZLE_TYPE_LOGIC_GRID, clues=["a", "b"])),
            "a\n\nb",
        )
        self.assertEqual(
            repair_display_text(generated("Ben", "Ben", PUZZLE_TYPE_LOGIC_GRID, categories=["People: Ann, Ben"])),
            "People: Ann, Ben",
        )
        self.assertEqual(repair_display_text(generated("echo", "echo", PUZZLE_TYPE_RIDDLE)), GENERIC_PUZZLE_TEXT)

    def test_rebus_format_exposes_legacy_field(self) -> None:
        formatted = format_puzzle(Puzzle(id="p1", puzzle="☀️ 🌻", puzzle_type="rebus", answer="sunflower"))
        self.assertEqual(formatted["rebusPuzzle"], formatted["puzzle"])
        riddle = format_puzzle(Puzzle(id="p2", puzzle="What has keys?", puzzle_type="riddle", answer="piano"))
        self.assertNotIn("rebusPuzzle", riddle)


class DailyPuzzleCacheTest(DatabaseTestCase):
    async def count_puzzles(self) -> int:
        async with self.database.session() as session:
            return await session.scalar(select(func.count(Puzzle.id)))

    async def test_second_fetch_returns_stored_puzzle(self) -> None:
        client = StubAIClient()
        cache = DailyPuzzleCache(self.database, PuzzleGenerator(client, self.database), ai_client=client)

        first = await cache.get_daily_puzzle("2024-06-03")
        second = await cache.get_daily_puzzle("2024-06-03")
        await cache.wait_background()

        self.assertTrue(first.generated)
        self.assertTrue(second.from_database)
        self.assertEqual(first.puzzle_id, second.puzzle_id)
        self.assertEqual(first.puzzle_id, daily_puzzle_id("2024-06-03"))
        self.assertEqual(client.calls, 1)

    async def test_generation_parameters(self) -> None:
        generator = ScriptedGenerator([generated("sunrise", "☀️ ⬆️")])
        cache = DailyPuzzleCache(self.database, generator, default_type="rebus")
        await cache.get_daily_puzzle("2024-06-05")

        self.assertEqual(generator.calls, [{
            "target_difficulty": 7,
            "puzzle_type": "rebus",
            "require_novelty": True,
            "quality_threshold": 70,
            "max_attempts": 3,
        }])

    async def test_rebus_is_readable_from_both_fields(self) -> None:
        cache = DailyPuzzleCache(self.database, ScriptedGenerator([generated("sunrise", "☀️ ⬆️")]))
        result = await cache.get_daily_puzzle("2024-06-04")

        async with self.database.session() as session:
            stored = await session.get(Puzzle, result.puzzle_id)
        self.assertEqual(stored.puzzle, "☀️ ⬆️")
        self.assertEqual(stored.rebus_puzzle, stored.puzzle)
        self.assertEqual(stored.daily_date, "2024-06-04")
        self.assertEqual(result.puzzle["rebusPuzzle"], result.puzzle["puzzle"])

    async def test_fallback_when_generation_fails(self) -> None:
        client = StubAIClient([AIProviderError("AI service unavailable", "stub", 503)])
        cache = DailyPuzzleCache(self.database, PuzzleGenerator(client))

        result = await cache.get_daily_puzzle("2024-06-01")

        self.assertEqual(client.calls, 3)
        self.assertTrue(result.fallback)
        self.assertEqual(fallback_index("2024-06-01"), 153 % 3)
        self.assertEqual(result.puzzle["answer"], FALLBACK_PUZZLES[153 % 3]["answer"])
        self.assertEqual(result.puzzle_id, "fallback-2024-06-01")
        self.assertEqual(await self.count_puzzles(), 0)

    async def test_fallback_is_reused_until_forced(self) -> None:
        outage = AIProviderError("AI service unavailable", "stub", 503)
        client = StubAIClient([outage, outage, outage, rebus_response()])
        cache = DailyPuzzleCache(self.database, PuzzleGenerator(client))

        first = await cache.get_daily_puzzle("2024-06-01")
        second = await cache.get_daily_puzzle("2024-06-01")
        self.assertTrue(first.fallback)
        self.assertTrue(second.fallback)
        self.assertEqual(client.calls, 3)

        forced = await cache.get_daily_puzzle("2024-06-01", force=True)
        self.assertTrue(forced.generated)
        self.assertEqual(client.calls, 4)
        self.assertEqual(await self.count_puzzles(), 1)

    async def test_generation_is_retried_once_the_window_passes(self) -> None:
        client = StubAIClient([AIProviderError("AI service unavailable", "stub", 503)])
        cache = DailyPuzzleCache(self.database, PuzzleGenerator(client), fallback_retry_seconds=0)

        await cache.get_daily_puzzle("2024-06-01")
        await cache.get_daily_puzzle("2024-06-01")

        self.assertEqual(client.calls, 6)

    async def test_corrupted_display_text_is_rebuilt_before_storing(self) -> None:
        puzzle = generated("Ben", "Ben", PUZZLE_TYPE_LOGIC_GRID, clues=["Ann has the cat.", "Cal has the dog."])
        cache = DailyPuzzleCache(self.database, ScriptedGenerator([puzzle]))

        result = await cache.get_daily_puzzle("2024-06-06")

        self.assertEqual(result.puzzle["puzzle"], "Ann has the cat.\n\nCal has the dog.")
        self.assertNotIn("rebusPuzzle", result.puzzle)

    async def test_concurrent_first_fetches_store_one_puzzle(self) -> None:
        generator = ScriptedGenerator(
            [generated("sunrise", "☀️ ⬆️"), generated("moonbeam", "🌙 ✨")], delay=0.05
        )
        cache = DailyPuzzleCache(self.database, generator)

        first, second = await asyncio.gather(
            cache.get_daily_puzzle("2024-06-07"),
            cache.get_daily_puzzle("2024-06-07"),
        )

        self.assertEqual(len(generator.calls), 2)
        self.assertEqual(first.puzzle_id, second.puzzle_id)
        self.assertEqual(first.puzzle["answer"], second.puzzle["answer"])
        self.assertEqual(await self.count_puzzles(), 1)

    async def test_embedding_is_attached_in_background(self) -> None:
        client = StubAIClient(embedding=[0.5, 0.25])
        cache = DailyPuzzleCache(self.database, PuzzleGenerator(client), ai_client=client)

        result = await cache.get_daily_puzzle("2024-06-08")
        await cache.wait_background()

        async with self.database.session() as session:
            stored = await session.get(Puzzle, result.puzzle_id)
        self.assertEqual(stored.embedding, [0.5, 0.25])

    async def test_unreadable_store_refuses_to_generate(self) -> None:
        generator = ScriptedGenerator([GenerationError("should not be called")])
        cache = DailyPuzzleCache(self.database, generator, retry_delay=0)
        failing = mock.AsyncMock(return_value=DbResult.fail(DatabaseConnectionError()))

        with mock.patch.object(PuzzleStore, "find_for_day", failing):
            with self.assertRaises(DatabaseError):
                await cache.get_daily_puzzle("2024-06-09")

        self.assertEqual(failing.await_count, 3)
        self.assertEqual(generator.calls, [])


if __name__ == "__main__":
    unittest.main()
