from __future__ import annotations

import unittest
from contextlib import AsyncExitStack
from datetime import timedelta
from types import SimpleNamespace
from unittest import mock

import httpx
import requests
from pywebpush import WebPushException
from sqlalchemy import func, select

from daily_puzzle.const import NO_PUZZLE_MESSAGE
from daily_puzzle.dates import today_key, utc_now
from daily_puzzle.errors import DatabaseConnectionError, DbResult
from daily_puzzle.main import create_app
from daily_puzzle.models import PushSubscription
from daily_puzzle.storage import PuzzleStore
from tests.support import StubAIClient, temp_database_url

CRON_SECRET = "s3cret"
CRON_HEADERS = {"Authorization": f"Bearer {CRON_SECRET}"}


class FakePush:
    """Stands in for pywebpush.webpush; endpoints listed in `gone` answer 410."""

    def __init__(self, gone=(), down=()) -> None:
        self.gone = set(gone)
        self.down = set(down)
        self.sent = []

    def __call__(self, subscription_info, data, **kwargs) -> None:
        endpoint = subscription_info["endpoint"]
        if endpoint in self.gone:
            raise WebPushException("gone", response=SimpleNamespace(status_code=410, text="gone"))
        if endpoint in self.down:
            raise requests.exceptions.ConnectionError("push service unreachable")
        self.sent.append((endpoint, data))


class ApiTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.ai = StubAIClient()
        self.push = FakePush(gone={"https://push.example/expired"}, down={"https://push.example/down"})
        self.app = create_app(
            database_url=temp_database_url(self),
            ai_client=self.ai,
            cron_secret=CRON_SECRET,
            push_sender=self.push,
        )
        stack = AsyncExitStack()
        await stack.enter_async_context(self.app.router.lifespan_context(self.app))
        self.client = await stack.enter_async_context(
            httpx.AsyncClient(transport=httpx.ASGITransport(app=self.app), base_url="http://testserver")
        )
        self.addAsyncCleanup(stack.aclose)

    async def new_guest(self) -> dict:
        response = await self.client.post("/api/auth/guest", json={"deviceId": "test-device"})
        self.assertEqual(response.status_code, 200)
        self.client.cookies.clear()
        return {"Authorization": f"Bearer {response.json()['token']}"}

    async def generate_today(self) -> dict:
        response = await self.client.get("/api/cron/generate-puzzles", headers=CRON_HEADERS)
        self.assertEqual(response.status_code, 200)
        return response.json()


class HealthTest(ApiTestCase):
    async def test_root_and_health(self) -> None:
        self.assertEqual((await self.client.get("/")).json()["status"], "ok")
        response = await self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "healthy")


class CronTest(ApiTestCase):
    async def test_requires_secret(self) -> None:
        self.assertEqual((await self.client.get("/api/cron/generate-puzzles")).status_code, 401)
        wrong = await self.client.get("/api/cron/generate-puzzles", headers={"Authorization": "Bearer nope"})
        self.assertEqual(wrong.status_code, 401)
        self.assertEqual(self.ai.calls, 0)

    async def test_generates_once_per_day(self) -> None:
        first = await self.generate_today()
        second = await self.generate_today()

        self.assertFalse(first["cached"])
        self.assertTrue(first["puzzleId"].startswith("daily-"))
        self.assertEqual(first["date"], today_key())
        self.assertTrue(second["cached"])
        self.assertEqual(second["puzzleId"], first["puzzleId"])
        self.assertEqual(self.ai.calls, 1)

    async def test_rejects_unknown_type(self) -> None:
        response = await self.client.get(
            "/api/cron/generate-puzzles", params={"type": "crossword"}, headers=CRON_HEADERS
        )
        self.assertEqual(response.status_code, 400)


class GameFlowTest(ApiTestCase):
    async def test_win_then_locked_for_the_day(self) -> None:
        headers = await self.new_guest()

        today = (await self.client.get("/api/puzzle/today", headers=headers)).json()
        self.assertFalse(today["shouldRedirect"])
        self.assertEqual(today["rebusPuzzle"], today["puzzle"])

        body = {"puzzleId": today["id"], "attemptedAnswer": "Light House", "timeSpentSeconds": 25}
        won = await self.client.post("/api/puzzle/attempt", json=body, headers=headers)
        self.assertEqual(won.status_code, 200)
        self.assertTrue(won.json()["isCorrect"])
        self.assertTrue(won.json()["isFinal"])
        self.assertEqual(won.json()["correctAnswer"], "lighthouse")
        self.assertGreater(won.json()["stats"]["pointsEarned"], 0)

        after = (await self.client.get("/api/puzzle/today", headers=headers)).json()
        self.assertTrue(after["shouldRedirect"])
        self.assertTrue(after["wasSuccessful"])

        status = (await self.client.get("/api/puzzle/status", headers=headers)).json()
        self.assertEqual(status, {"hasAttempt": True, "wasSuccessful": True, "puzzleId": today["id"], "date": today_key()})

        again = await self.client.post("/api/puzzle/attempt", json=body, headers=headers)
        self.assertEqual(again.status_code, 409)
        self.assertTrue(again.json()["alreadyCompleted"])
        self.assertEqual(again.json()["attempt"]["id"], won.json()["attempt"]["id"])

    async def test_client_correctness_flag_is_not_trusted(self) -> None:
        headers = await self.new_guest()
        puzzle_id = (await self.generate_today())["puzzleId"]

        body = {"puzzleId": puzzle_id, "attemptedAnswer": "lamp post", "isCorrect": True}
        response = await self.client.post("/api/puzzle/attempt", json=body, headers=headers)

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["isCorrect"])
        self.assertFalse(response.json()["isFinal"])
        self.assertEqual(response.json()["remainingAttempts"], 4)

    async def test_running_out_of_attempts_ends_the_game(self) -> None:
        headers = await self.new_guest()
        puzzle_id = (await self.generate_today())["puzzleId"]

        for number in range(1, 3):
            body = {"puzzleId": puzzle_id, "attemptedAnswer": f"guess {number}", "maxAttempts": 2}
            response = (await self.client.post("/api/puzzle/attempt", json=body, headers=headers)).json()

        self.assertTrue(response["isFinal"])
        self.assertTrue(response["attempt"]["abandoned"])
        self.assertEqual(response["stats"]["streak"], 0)

    async def test_guesses_after_a_win_are_refused(self) -> None:
        headers = await self.new_guest()
        puzzle_id = (await self.generate_today())["puzzleId"]

        won = await self.client.post(
            "/api/puzzle/attempt", json={"puzzleId": puzzle_id, "attemptedAnswer": "lighthouse"}, headers=headers
        )
        wrong = await self.client.post(
            "/api/puzzle/attempt", json={"puzzleId": puzzle_id, "attemptedAnswer": "lamp post"}, headers=headers
        )

        self.assertEqual(wrong.status_code, 409)
        self.assertTrue(wrong.json()["alreadyCompleted"])
        self.assertEqual(wrong.json()["attempt"]["id"], won.json()["attempt"]["id"])

    async def test_unreadable_store_serves_no_puzzle_payload(self) -> None:
        headers = await self.new_guest()
        failing = mock.AsyncMock(return_value=DbResult.fail(DatabaseConnectionError()))

        with mock.patch.object(PuzzleStore, "find_for_day", failing):
            response = await self.client.get("/api/puzzle/today", headers=headers)

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["error"])
        self.assertIsNone(response.json()["id"])
        self.assertEqual(response.json()["puzzle"], NO_PUZZLE_MESSAGE)
        self.assertEqual(self.ai.calls, 0)

    async def test_attempt_needs_a_session(self) -> None:
        body = {"puzzleId": "daily-x", "attemptedAnswer": "x"}
        self.assertEqual((await self.client.post("/api/puzzle/attempt", json=body)).status_code, 401)

    async def test_unknown_puzzle(self) -> None:
        headers = await self.new_guest()
        body = {"puzzleId": "daily-missing", "attemptedAnswer": "x"}
        response = await self.client.post("/api/puzzle/attempt", json=body, headers=headers)
        self.assertEqual(response.status_code, 404)


class PuzzleByDateTest(ApiTestCase):
    async def test_bad_and_future_dates(self) -> None:
        self.assertEqual((await self.client.get("/api/puzzle/not-a-date")).status_code, 400)
        tomorrow = (utc_now() + timedelta(days=1)).strftime("%Y-%m-%d")
        self.assertEqual((await self.client.get(f"/api/puzzle/{tomorrow}")).status_code, 404)

    async def test_past_day_without_puzzle(self) -> None:
        self.assertEqual((await self.client.get("/api/puzzle/2020-01-01")).status_code, 404)

    async def test_today(self) -> None:
        await self.generate_today()
        response = await self.client.get(f"/api/puzzle/{today_key()}")
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["fromDatabase"])
        self.assertEqual(response.json()["puzzle"]["dailyDate"], today_key())


class AccountTest(ApiTestCase):
    async def test_convert_guest_once(self) -> None:
        headers = await self.new_guest()
        details = {"username": "puzzler", "email": "Puzzler@Example.com", "password": "correct horse"}

        converted = await self.client.post("/api/auth/convert", json=details, headers=headers)
        self.assertEqual(converted.status_code, 200)
        self.assertFalse(converted.json()["user"]["isGuest"])
        self.assertEqual(converted.json()["user"]["email"], "puzzler@example.com")

        new_headers = {"Authorization": f"Bearer {converted.json()['token']}"}
        again = await self.client.post("/api/auth/convert", json=details, headers=new_headers)
        self.assertEqual(again.status_code, 400)

        # the old guest session was rotated out
        self.client.cookies.clear()
        self.assertEqual((await self.client.get("/api/user/stats", headers=headers)).status_code, 401)

    async def test_signup_and_login(self) -> None:
        details = {"username": "solver", "email": "solver@example.com", "password": "hunter22!"}
        signup = await self.client.post("/api/auth/signup", json=details)
        self.assertEqual(signup.status_code, 200)
        self.assertIn("session_token", signup.cookies)

        duplicate = await self.client.post("/api/auth/signup", json=details)
        self.assertEqual(duplicate.status_code, 409)

        bad = await self.client.post("/api/auth/login", json={"email": "solver", "password": "wrong password"})
        self.assertEqual(bad.status_code, 401)

        login = await self.client.post("/api/auth/login", json={"email": "solver", "password": "hunter22!"})
        self.assertEqual(login.status_code, 200)
        self.assertEqual(login.json()["user"]["username"], "solver")

    async def test_weak_password(self) -> None:
        details = {"username": "solver", "email": "solver@example.com", "password": "short"}
        self.assertEqual((await self.client.post("/api/auth/signup", json=details)).status_code, 400)

    async def test_guest_cookie_resumes_guest(self) -> None:
        first = await self.client.post("/api/auth/guest")
        second = await self.client.post("/api/auth/guest")
        self.assertEqual(first.json()["user"]["id"], second.json()["user"]["id"])
        self.assertNotEqual(first.json()["token"], second.json()["token"])


class StatsAndLeaderboardTest(ApiTestCase):
    async def test_win_shows_on_boards(self) -> None:
        headers = await self.new_guest()
        puzzle_id = (await self.generate_today())["puzzleId"]
        await self.client.post(
            "/api/puzzle/attempt", json={"puzzleId": puzzle_id, "attemptedAnswer": "lighthouse"}, headers=headers
        )

        stats = (await self.client.get("/api/user/stats", headers=headers)).json()
        self.assertEqual(stats["stats"]["wins"], 1)
        self.assertEqual(stats["stats"]["streak"], 1)
        self.assertEqual(stats["rank"], 1)

        points = (await self.client.get("/api/leaderboard")).json()["leaderboard"]
        self.assertEqual(points[0]["userId"], stats["user"]["id"])

        daily = (await self.client.get("/api/leaderboard", params={"timeframe": "daily"})).json()["leaderboard"]
        self.assertEqual(daily[0]["wins"], 1)

        streaks = (await self.client.get("/api/leaderboard", params={"type": "streak"})).json()["leaderboard"]
        self.assertEqual(streaks[0]["streak"], 1)

    async def test_bad_leaderboard_params(self) -> None:
        response = await self.client.get("/api/leaderboard", params={"timeframe": "forever"})
        self.assertEqual(response.status_code, 422)


class NotificationTest(ApiTestCase):
    async def subscribe(self, endpoint: str) -> None:
        body = {"endpoint": endpoint, "keys": {"p256dh": "key", "auth": "secret"}}
        response = await self.client.post("/api/notifications/subscribe", json=body)
        self.assertEqual(response.status_code, 200)

    async def subscription_count(self) -> int:
        async with self.app.state.database.session() as session:
            return await session.scalar(select(func.count(PushSubscription.id)))

    async def test_missing_keys_is_reported(self) -> None:
        self.app.state.notifications.vapid_private_key = None
        response = await self.client.post("/api/cron/send-notifications", headers=CRON_HEADERS)
        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.json()["success"])

    async def test_sends_and_prunes_expired(self) -> None:
        self.app.state.notifications.vapid_private_key = "test-private-key"
        await self.generate_today()
        await self.subscribe("https://push.example/live")
        await self.subscribe("https://push.example/expired")
        # subscribing twice refreshes rather than duplicates
        await self.subscribe("https://push.example/live")

        response = await self.client.post("/api/cron/send-notifications", headers=CRON_HEADERS)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(), {"success": True, "sent": 1, "errors": 0, "expired": 1, "total": 2}
        )
        self.assertEqual(self.push.sent[0][0], "https://push.example/live")
        self.assertEqual(await self.subscription_count(), 1)

    async def test_unreachable_endpoint_counts_as_error(self) -> None:
        self.app.state.notifications.vapid_private_key = "test-private-key"
        await self.generate_today()
        for endpoint in ("https://push.example/expired", "https://push.example/down", "https://push.example/live"):
            await self.subscribe(endpoint)

        response = await self.client.post("/api/cron/send-notifications", headers=CRON_HEADERS)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(), {"success": True, "sent": 1, "errors": 1, "expired": 1, "total": 3}
        )
        # the unreachable endpoint is kept, only the expired one is removed
        self.assertEqual(await self.subscription_count(), 2)

    async def test_no_puzzle_yet(self) -> None:
        self.app.state.notifications.vapid_private_key = "test-private-key"
        response = await self.client.post("/api/cron/send-notifications", headers=CRON_HEADERS)
        self.assertEqual(response.status_code, 400)


class AdminTest(ApiTestCase):
    async def test_delete_puzzle(self) -> None:
        puzzle_id = (await self.generate_today())["puzzleId"]

        self.assertEqual((await self.client.delete(f"/api/admin/puzzles/{puzzle_id}")).status_code, 401)
        deleted = await self.client.delete(f"/api/admin/puzzles/{puzzle_id}", headers=CRON_HEADERS)
        self.assertEqual(deleted.status_code, 200)
        missing = await self.client.delete(f"/api/admin/puzzles/{puzzle_id}", headers=CRON_HEADERS)
        self.assertEqual(missing.status_code, 404)


if __name__ == "__main__":
    unittest.main()
