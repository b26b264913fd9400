"""
Daily Puzzle FastAPI Server
"""
from __future__ import annotations

import hmac
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from . import __version__, config
from .ai_client import OllamaClient
from .auth import AccountService, AuthenticationError, current_user, require_user, user_to_dict
from .const import COOKIE_MAX_AGE, DEFAULT_MAX_ATTEMPTS, GUEST_TOKEN_COOKIE, PUZZLE_TYPES, SESSION_COOKIE
from .database import Database, get_db
from .dates import is_date_key, today_key
from .decision_log import DecisionLog
from .errors import DatabaseError
from .game_logic import GameManager
from .ledger import AttemptLedger
from .models import User
from .notifications import NotificationError, NotificationSender
from .puzzle_cache import DailyPuzzleCache, format_puzzle
from .puzzle_generator import PuzzleGenerator
from .scoring import points_to_next_level
from .storage import PuzzleStore, SubscriptionStore, UserStatsStore

_LOGGER = logging.getLogger(__name__)

_STATUS_BY_CODE = {
    "NOT_FOUND": 404,
    "VALIDATION_ERROR": 400,
    "UNIQUE_VIOLATION": 409,
    "FOREIGN_KEY_VIOLATION": 400,
    "CONNECTION_ERROR": 503,
}


def setup_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or config.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


# Pydantic models for requests

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class AttemptRequest(_CamelModel):
    puzzle_id: str = Field(alias="puzzleId")
    attempted_answer: str = Field(default="", alias="attemptedAnswer", max_length=200)
    is_correct: Optional[bool] = Field(default=None, alias="isCorrect")
    abandoned: bool = False
    time_spent_seconds: Optional[int] = Field(default=None, alias="timeSpentSeconds", ge=0)
    hints_used: int = Field(default=0, alias="hintsUsed", ge=0)
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, alias="maxAttempts", ge=1, le=10)


class GuestRequest(_CamelModel):
    device_id: Optional[str] = Field(default=None, alias="deviceId", max_length=128)


class SignupRequest(_CamelModel):
    username: str
    email: str
    password: str


class LoginRequest(_CamelModel):
    email: str = Field(description="Email or username")
    password: str


class SubscriptionKeys(_CamelModel):
    p256dh: str
    auth: str


class SubscribeRequest(_CamelModel):
    endpoint: str
    keys: SubscriptionKeys


def _set_session_cookies(response: Response, user: User) -> None:
    response.set_cookie(SESSION_COOKIE, user.session_token, max_age=COOKIE_MAX_AGE, httponly=True, samesite="lax")
    if user.is_guest and user.guest_token:
        response.set_cookie(GUEST_TOKEN_COOKIE, user.guest_token, max_age=COOKIE_MAX_AGE, httponly=True, samesite="lax")
    else:
        response.delete_cookie(GUEST_TOKEN_COOKIE)


def _auth_payload(user: User) -> dict:
    return {"success": True, "user": user_to_dict(user), "token": user.session_token}


def verify_cron_secret(request: Request) -> None:
    """Require `Authorization: Bearer <CRON_SECRET>`."""
    secret = request.app.state.cron_secret
    header = request.headers.get("authorization", "")
    supplied = header[7:].strip() if header.lower().startswith("bearer ") else ""
    if not secret:
        _LOGGER.error("CRON_SECRET is not configured, rejecting request to %s", request.url.path)
    if not secret or not hmac.compare_digest(supplied.encode(), secret.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


def create_app(
    database_url: str | None = None,
    ai_client=None,
    cron_secret: str | None = None,
    push_sender=None,
) -> FastAPI:
    """Build the application; resources are created on startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        database = Database(database_url)
        await database.init()
        decision_log = DecisionLog(database)
        decision_log.start()
        client = ai_client or OllamaClient()
        generator = PuzzleGenerator(client, database, decision_log)

        app.state.database = database
        app.state.decision_log = decision_log
        app.state.cache = DailyPuzzleCache(database, generator, ai_client=client)
        app.state.notifications = NotificationSender(database, send=push_sender)
        _LOGGER.info("Database initialized at %s", database.url)
        try:
            yield
        finally:
            await app.state.cache.wait_background()
            await decision_log.stop()
            await database.dispose()
            _LOGGER.info("Shutdown complete")

    app = FastAPI(title="Daily Puzzle API", version=__version__, lifespan=lifespan)
    app.state.cron_secret = cron_secret if cron_secret is not None else config.CRON_SECRET

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DatabaseError)
    async def database_error_handler(request: Request, exc: DatabaseError):
        status = _STATUS_BY_CODE.get(exc.code, 500)
        if status >= 500:
            _LOGGER.error("Database error on %s: %s", request.url.path, exc.message)
        return JSONResponse(status_code=status, content={"success": False, "error": exc.message, "code": exc.code})

    @app.exception_handler(AuthenticationError)
    async def auth_error_handler(request: Request, exc: AuthenticationError):
        return JSONResponse(status_code=401, content={"success": False, "error": str(exc)})

    # Health check endpoints
    @app.get("/")
    async def root():
        return {"status": "ok", "service": "Daily Puzzle API", "version": __version__}

    @app.get("/health")
    async def health(request: Request):
        """Database health check (retried)"""
        result = await request.app.state.database.health_check()
        status = "healthy" if result["healthy"] else "unhealthy"
        return JSONResponse(
            status_code=200 if result["healthy"] else 503,
            content={"status": status, "database": result},
        )

    # Puzzle endpoints
    @app.get("/api/puzzle/today")
    async def puzzle_today(
        request: Request,
        db: AsyncSession = Depends(get_db),
        user: Optional[User] = Depends(current_user),
    ):
        """Today's puzzle; `shouldRedirect` once the player has finished it"""
        manager = GameManager(db, request.app.state.cache)
        return await manager.fetch_game_data(user.id if user else None)

    @app.get("/api/puzzle/status")
    async def puzzle_status(db: AsyncSession = Depends(get_db), user: User = Depends(require_user)):
        has_attempt, was_successful, puzzle_id = await AttemptLedger(db).has_today_attempt(user.id)
        return {
            "hasAttempt": has_attempt,
            "wasSuccessful": was_successful,
            "puzzleId": puzzle_id,
            "date": today_key(),
        }

    @app.post("/api/puzzle/attempt")
    async def submit_attempt(
        body: AttemptRequest,
        request: Request,
        db: AsyncSession = Depends(get_db),
        user: User = Depends(require_user),
    ):
        """Record a guess; correctness is checked against the stored answer"""
        manager = GameManager(db, request.app.state.cache)
        result = await manager.submit_guess(
            user.id,
            body.puzzle_id,
            body.attempted_answer,
            time_spent_seconds=body.time_spent_seconds,
            hints_used=body.hints_used,
            max_attempts=body.max_attempts,
            abandoned=body.abandoned,
            client_is_correct=body.is_correct,
        )
        if not result["success"]:
            return JSONResponse(status_code=409, content=result)
        return result

    @app.get("/api/puzzle/{date}")
    async def puzzle_for_date(date: str, request: Request, db: AsyncSession = Depends(get_db)):
        if not is_date_key(date):
            raise HTTPException(status_code=400, detail="Date must be YYYY-MM-DD")
        if date > today_key():
            raise HTTPException(status_code=404, detail="Puzzle not published yet")

        if date == today_key():
            daily = await request.app.state.cache.get_daily_puzzle(date)
            return {"success": True, "puzzle": daily.puzzle, "fromDatabase": daily.from_database}

        result = await PuzzleStore(db).find_for_day(date)
        if not result.success:
            raise result.error
        if result.data is None:
            raise HTTPException(status_code=404, detail=f"No puzzle for {date}")
        return {"success": True, "puzzle": format_puzzle(result.data), "fromDatabase": True}

    # Cron endpoints
    @app.get("/api/cron/generate-puzzles", dependencies=[Depends(verify_cron_secret)])
    async def cron_generate(request: Request, puzzle_type: Optional[str] = Query(default=None, alias="type")):
        """Make sure today's puzzle exists"""
        if puzzle_type is not None and puzzle_type not in PUZZLE_TYPES:
            raise HTTPException(status_code=400, detail=f"Unknown puzzle type: {puzzle_type}")
        daily = await request.app.state.cache.get_daily_puzzle(today_key(), puzzle_type, force=True)
        return {
            "success": True,
            "cached": daily.from_database,
            "fallback": daily.fallback,
            "puzzleId": daily.puzzle_id,
            "date": today_key(),
        }

    @app.post("/api/cron/send-notifications", dependencies=[Depends(verify_cron_secret)])
    async def cron_send_notifications(request: Request):
        try:
            counts = await request.app.state.notifications.send_daily_notifications()
        except NotificationError as e:
            _LOGGER.warning("Daily notifications not sent: %s", e)
            return JSONResponse(status_code=400, content={"success": False, "error": str(e)})
        return {"success": True, **counts}

    @app.post("/api/notifications/subscribe")
    async def subscribe(
        body: SubscribeRequest,
        request: Request,
        db: AsyncSession = Depends(get_db),
        user: Optional[User] = Depends(current_user),
    ):
        result = await SubscriptionStore(db).upsert(
            body.endpoint,
            body.keys.p256dh,
            body.keys.auth,
            user_id=user.id if user else None,
            user_agent=(request.headers.get("user-agent") or "")[:255] or None,
        )
        if not result.success:
            raise result.error
        return {"success": True, "subscriptionId": result.data.id}

    # Account endpoints
    @app.post("/api/auth/guest")
    async def auth_guest(
        request: Request,
        response: Response,
        body: Optional[GuestRequest] = None,
        db: AsyncSession = Depends(get_db),
    ):
        """Create a guest, or resume the one named by the guest cookie"""
        accounts = AccountService(db)
        user = None
        guest_token = request.cookies.get(GUEST_TOKEN_COOKIE)
        if guest_token:
            user = await accounts.resume_guest(guest_token)
        if user is None:
            user = await accounts.create_guest(
                ip_address=request.client.host if request.client else None,
                device_id=body.device_id if body else None,
            )
        _set_session_cookies(response, user)
        return _auth_payload(user)

    @app.post("/api/auth/signup")
    async def auth_signup(body: SignupRequest, response: Response, db: AsyncSession = Depends(get_db)):
        user = await AccountService(db).signup(body.username, body.email, body.password)
        _set_session_cookies(response, user)
        return _auth_payload(user)

    @app.post("/api/auth/login")
    async def auth_login(body: LoginRequest, response: Response, db: AsyncSession = Depends(get_db)):
        user = await AccountService(db).login(body.email, body.password)
        _set_session_cookies(response, user)
        return _auth_payload(user)

    @app.post("/api/auth/convert")
    async def auth_convert(
        body: SignupRequest,
        response: Response,
        db: AsyncSession = Depends(get_db),
        user: User = Depends(require_user),
    ):
        """Turn the signed-in guest into a registered account"""
        user = await AccountService(db).convert_guest(user, body.username, body.email, body.password)
        _set_session_cookies(response, user)
        return _auth_payload(user)

    # Stats endpoints
    @app.get("/api/user/stats")
    async def user_stats(db: AsyncSession = Depends(get_db), user: User = Depends(require_user)):
        store = UserStatsStore(db)
        stats = await store.get_or_create(user.id)
        return {
            "user": user_to_dict(user),
            "stats": {
                "points": stats.points,
                "streak": stats.streak,
                "maxStreak": stats.max_streak,
                "totalGames": stats.total_games,
                "wins": stats.wins,
                "level": stats.level,
                "dailyChallengeStreak": stats.daily_challenge_streak,
                "lastPlayDate": stats.last_play_date.isoformat() if stats.last_play_date else None,
                "perfectSolves": stats.perfect_solves,
                "clutchSolves": stats.clutch_solves,
                "speedSolves": stats.speed_solves,
                "fastestSolveSeconds": stats.fastest_solve_seconds,
                "streakFreezes": stats.streak_freezes,
                "luckySolveCount": stats.lucky_solve_count,
            },
            "levelProgress": points_to_next_level(stats.points or 0),
            "rank": await store.rank_of(user.id),
        }

    @app.get("/api/leaderboard")
    async def leaderboard(
        db: AsyncSession = Depends(get_db),
        board: str = Query(default="points", alias="type", pattern="^(points|streak)$"),
        timeframe: str = Query(default="alltime", pattern="^(alltime|daily|weekly|monthly)$"),
        limit: int = Query(default=10, ge=1, le=100),
    ):
        store = UserStatsStore(db)
        if board == "streak":
            entries = await store.streak_leaderboard(limit)
        else:
            entries = await store.points_leaderboard(limit, timeframe)
        return {"success": True, "type": board, "timeframe": timeframe, "leaderboard": entries}

    # Admin
    @app.delete("/api/admin/puzzles/{puzzle_id}", dependencies=[Depends(verify_cron_secret)])
    async def admin_delete_puzzle(puzzle_id: str, db: AsyncSession = Depends(get_db)):
        result = await PuzzleStore(db).delete(puzzle_id)
        if not result.success:
            raise result.error
        if not result.data:
            raise HTTPException(status_code=404, detail="Puzzle not found")
        _LOGGER.info("Deleted puzzle %s", puzzle_id)
        return {"success": True, "deleted": puzzle_id}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=config.HOST, port=config.PORT)
