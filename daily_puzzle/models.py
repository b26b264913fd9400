"""
Database models for the daily puzzle server
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON, Text, Float, Index, text
from sqlalchemy.orm import declarative_base

from .dates import utc_now

Base = declarative_base()


class Puzzle(Base):
    """A generated puzzle, published for one calendar day"""
    __tablename__ = "puzzles"

    id = Column(String(64), primary_key=True, index=True)
    puzzle = Column(Text, nullable=False)  # Display text, generic across puzzle types
    rebus_puzzle = Column(Text, nullable=True)  # Legacy display field, mirrors `puzzle` for rebus
    puzzle_type = Column(String(32), nullable=False, default="rebus")
    answer = Column(String(200), nullable=False)
    difficulty = Column(Integer, nullable=False, default=5)  # 1-10
    category = Column(String(100), nullable=True)
    explanation = Column(Text, nullable=True)
    hints = Column(JSON, default=list)
    puzzle_metadata = Column("metadata", JSON, default=dict)
    embedding = Column(JSON, nullable=True)

    daily_date = Column(String(10), nullable=True, unique=True)  # YYYY-MM-DD format
    published_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=utc_now)
    active = Column(Boolean, default=True, index=True)

    @property
    def display_text(self) -> str:
        return self.puzzle or self.rebus_puzzle or ""


class Attempt(Base):
    """A single guess against a puzzle"""
    __tablename__ = "puzzle_attempts"

    id = Column(String(50), primary_key=True, index=True)  # UUID
    user_id = Column(String(50), nullable=False, index=True)
    puzzle_id = Column(String(64), nullable=False, index=True)

    attempted_answer = Column(String(200), nullable=False, default="")
    is_correct = Column(Boolean, default=False)
    abandoned = Column(Boolean, default=False)
    # is_correct OR abandoned; only one final attempt per user per day
    is_final = Column(Boolean, default=False)

    attempted_at = Column(DateTime, default=utc_now, index=True)
    attempt_day = Column(String(10), nullable=False)  # UTC day of attempted_at
    completed_at = Column(DateTime, nullable=True)

    attempt_number = Column(Integer, default=1)
    max_attempts = Column(Integer, default=5)
    time_spent_seconds = Column(Integer, nullable=True)
    hints_used = Column(Integer, default=0)
    difficulty = Column(Integer, nullable=True)

    __table_args__ = (
        Index(
            "uq_attempt_final_per_user_day",
            "user_id",
            "attempt_day",
            unique=True,
            sqlite_where=text("is_final = 1"),
            postgresql_where=text("is_final"),
        ),
    )


class UserStats(Base):
    """Cumulative per-user statistics"""
    __tablename__ = "user_stats"

    id = Column(String(64), primary_key=True, index=True)
    user_id = Column(String(50), nullable=False, unique=True)

    points = Column(Integer, default=0)
    streak = Column(Integer, default=0)
    max_streak = Column(Integer, default=0)
    total_games = Column(Integer, default=0)
    wins = Column(Integer, default=0)
    level = Column(Integer, default=1)
    daily_challenge_streak = Column(Integer, default=0)
    last_play_date = Column(DateTime, nullable=True)

    # Achievement tracking
    perfect_solves = Column(Integer, default=0)  # First attempt wins
    clutch_solves = Column(Integer, default=0)  # Last attempt wins
    speed_solves = Column(Integer, default=0)
    fastest_solve_seconds = Column(Integer, nullable=True)
    total_time_played = Column(Integer, default=0)
    no_hint_streak = Column(Integer, default=0)
    max_no_hint_streak = Column(Integer, default=0)
    consecutive_perfect = Column(Integer, default=0)
    max_consecutive_perfect = Column(Integer, default=0)
    weekend_solves = Column(Integer, default=0)
    easy_puzzles_solved = Column(Integer, default=0)
    medium_puzzles_solved = Column(Integer, default=0)
    hard_puzzles_solved = Column(Integer, default=0)
    shared_results = Column(Integer, default=0)

    # Engagement bookkeeping
    streak_freezes = Column(Integer, default=1)
    lucky_solve_count = Column(Integer, default=0)
    last_lucky_solve = Column(DateTime, nullable=True)
    last_bonus_multiplier = Column(Float, nullable=True)
    last_bonus_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


class User(Base):
    """A registered player or an ephemeral guest"""
    __tablename__ = "users"

    id = Column(String(50), primary_key=True, index=True)  # UUID
    username = Column(String(100), nullable=False, unique=True)
    email = Column(String(255), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=True)  # None for guests

    is_guest = Column(Boolean, default=False)
    guest_token = Column(String(64), nullable=True, unique=True)
    session_token = Column(String(64), nullable=True, unique=True, index=True)
    converted_from_guest_id = Column(String(50), nullable=True)
    ip_address = Column(String(64), nullable=True)
    device_id = Column(String(128), nullable=True)

    created_at = Column(DateTime, default=utc_now)
    last_login = Column(DateTime, nullable=True)


class PushSubscription(Base):
    """Web-push endpoint with its key material"""
    __tablename__ = "push_subscriptions"

    id = Column(String(50), primary_key=True, index=True)
    user_id = Column(String(50), nullable=True, index=True)
    endpoint = Column(Text, nullable=False, unique=True)
    p256dh = Column(String(255), nullable=False)
    auth = Column(String(255), nullable=False)
    user_agent = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


class AIDecision(Base):
    """One tracked AI operation (generation, embedding, ...)"""
    __tablename__ = "ai_decisions"

    id = Column(String(50), primary_key=True, index=True)
    operation_id = Column(String(50), nullable=False, index=True)
    decision_type = Column(String(50), nullable=False)
    provider = Column(String(50), nullable=True)
    model = Column(String(100), nullable=True)
    success = Column(Boolean, default=True)
    duration_ms = Column(Integer, default=0)
    prompt_tokens = Column(Integer, default=0)
    completion_tokens = Column(Integer, default=0)
    total_tokens = Column(Integer, default=0)
    steps = Column(JSON, default=list)  # Chain of intermediate steps
    context = Column(JSON, default=dict)
    result = Column(JSON, default=dict)
    entity_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utc_now, index=True)


class AIErrorRecord(Base):
    """A classified AI failure"""
    __tablename__ = "ai_errors"

    id = Column(String(50), primary_key=True, index=True)
    operation_id = Column(String(50), nullable=True, index=True)
    decision_type = Column(String(50), nullable=True)
    provider = Column(String(50), nullable=True)
    model = Column(String(100), nullable=True)
    error_code = Column(String(64), nullable=False)
    error_type = Column(String(32), nullable=False)
    severity = Column(String(16), nullable=False)
    message = Column(Text, nullable=False)
    tags = Column(JSON, default=list)
    resolved = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utc_now, index=True)
