from __future__ import annotations

import unittest
from unittest import mock

from sqlalchemy import select

from daily_puzzle.decision_log import DecisionLog, new_operation_id
from daily_puzzle.models import AIErrorRecord
from daily_puzzle.storage import DecisionStore
from tests.support import DatabaseTestCase


class DecisionLogTest(DatabaseTestCase):
    async def test_full_queue_drops_without_blocking(self) -> None:
        log = DecisionLog(self.database, maxsize=1)

        self.assertTrue(log.track_decision("op_1", "daily_puzzle_generation", True))
        with self.assertLogs("daily_puzzle.decision_log", "WARNING"):
            accepted = log.track_decision("op_2", "daily_puzzle_generation", True)

        self.assertFalse(accepted)
        self.assertEqual(log.dropped, 1)

    async def test_errors_are_classified_on_write(self) -> None:
        log = DecisionLog(self.database)
        log.start()
        self.addAsyncCleanup(log.stop)

        log.track_error("Rate limit exceeded for model", operation_id="op_q")
        await log.join()

        async with self.database.session() as session:
            record = (await session.execute(select(AIErrorRecord))).scalar_one()
        self.assertEqual(record.error_type, "quota")
        self.assertEqual(record.severity, "major")
        self.assertEqual(record.operation_id, "op_q")
        self.assertEqual(log.written, 1)

    async def test_failed_write_is_dropped_with_warning(self) -> None:
        log = DecisionLog(self.database)
        log.start()
        self.addAsyncCleanup(log.stop)

        with mock.patch.object(DecisionStore, "add_decision", side_effect=RuntimeError("disk full")):
            with self.assertLogs("daily_puzzle.decision_log", "WARNING") as logs:
                log.track_decision("op_3", "daily_puzzle_generation", False)
                await log.join()

        self.assertIn("disk full", logs.output[0])
        self.assertEqual(log.written, 0)

        # the worker survives a failed write
        log.track_decision("op_4", "daily_puzzle_generation", True)
        await log.join()
        self.assertEqual(log.written, 1)

    async def test_stop_flushes_queue(self) -> None:
        log = DecisionLog(self.database)
        log.start()
        for _ in range(3):
            log.track_decision(new_operation_id(), "daily_puzzle_generation", True)
        await log.stop()
        self.assertEqual(log.written, 3)

    def test_operation_ids(self) -> None:
        first, second = new_operation_id(), new_operation_id()
        self.assertNotEqual(first, second)
        self.assertRegex(first, r"^op_[0-9a-f]{16}$")


if __name__ == "__main__":
    unittest.main()
