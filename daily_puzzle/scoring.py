"""Points, streaks, levels and bonus multipliers."""
from __future__ import annotations

import math
import random
from dataclasses import dataclass
from datetime import date, datetime

from .const import (
    BASE_SCORE,
    DAILY_BONUS_CHANCE,
    DAILY_BONUS_MAX_MULTIPLIER,
    DAILY_BONUS_MIN_MULTIPLIER,
    DEFAULT_MAX_ATTEMPTS,
    DIFFICULTY_BASELINE,
    DIFFICULTY_BONUS_PER_LEVEL,
    INITIAL_STREAK_FREEZES,
    LUCKY_SOLVE_CHANCE,
    LUCKY_SOLVE_MULTIPLIER,
    MAX_DIFFICULTY_BONUS,
    MAX_HINT_PENALTY,
    MAX_LEVEL,
    MAX_STREAK_BONUS,
    MIN_SCORE,
    PENALTY_PER_HINT,
    PENALTY_PER_WRONG_ATTEMPT,
    POINTS_PER_LEVEL,
    SPEED_FAST_THRESHOLD,
    SPEED_MAX_BONUS,
    SPEED_SLOW_THRESHOLD,
    SPEED_SOLVE_SECONDS,
    STREAK_BONUS_PER_DAY,
)
from .dates import DATE_KEY_FORMAT, days_between, utc_now


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def speed_bonus(time_taken: float | None) -> int:
    """Full bonus at or under 30s, linear down to nothing at 120s."""
    if time_taken is None:
        return 0
    if time_taken <= SPEED_FAST_THRESHOLD:
        return SPEED_MAX_BONUS
    if time_taken >= SPEED_SLOW_THRESHOLD:
        return 0
    ratio = 1 - (time_taken - SPEED_FAST_THRESHOLD) / (SPEED_SLOW_THRESHOLD - SPEED_FAST_THRESHOLD)
    return _round_half_up(SPEED_MAX_BONUS * ratio)


def difficulty_bonus(difficulty: int | None) -> int:
    if difficulty is None or difficulty <= DIFFICULTY_BASELINE:
        return 0
    return min((difficulty - DIFFICULTY_BASELINE) * DIFFICULTY_BONUS_PER_LEVEL, MAX_DIFFICULTY_BONUS)


@dataclass
class ScoreBreakdown:
    base_score: int
    speed_bonus: int
    accuracy_penalty: int
    hint_penalty: int
    streak_bonus: int
    difficulty_bonus: int
    total: int

    def to_dict(self) -> dict:
        return {
            "baseScore": self.base_score,
            "speedBonus": self.speed_bonus,
            "accuracyPenalty": self.accuracy_penalty,
            "hintPenalty": self.hint_penalty,
            "streakBonus": self.streak_bonus,
            "difficultyBonus": self.difficulty_bonus,
            "totalScore": self.total,
        }


def score_breakdown(
    attempts: int,
    time_taken: float | None = None,
    streak_days: int = 0,
    difficulty: int | None = None,
    hints_used: int = 0,
) -> ScoreBreakdown:
    accuracy_penalty = max(attempts - 1, 0) * PENALTY_PER_WRONG_ATTEMPT
    hint_penalty = min(max(hints_used, 0) * PENALTY_PER_HINT, MAX_HINT_PENALTY)
    streak = min(max(streak_days, 0) * STREAK_BONUS_PER_DAY, MAX_STREAK_BONUS)
    speed = speed_bonus(time_taken)
    diff = difficulty_bonus(difficulty)

    total = BASE_SCORE + speed - accuracy_penalty - hint_penalty + streak + diff
    return ScoreBreakdown(
        base_score=BASE_SCORE,
        speed_bonus=speed,
        accuracy_penalty=accuracy_penalty,
        hint_penalty=hint_penalty,
        streak_bonus=streak,
        difficulty_bonus=diff,
        total=max(total, MIN_SCORE),
    )


def calculate_game_points(
    attempts: int,
    time_taken: float | None = None,
    streak_days: int = 0,
    difficulty: int | None = None,
    hints_used: int = 0,
) -> int:
    """Points for a solved puzzle (never below the minimum score)."""
    return score_breakdown(attempts, time_taken, streak_days, difficulty, hints_used).total


def calculate_level(points: int) -> int:
    return min(max(1, points // POINTS_PER_LEVEL + 1), MAX_LEVEL)


def points_to_next_level(points: int) -> dict:
    level = calculate_level(points)
    in_level = points - (level - 1) * POINTS_PER_LEVEL
    return {
        "currentLevel": level,
        "pointsInCurrentLevel": in_level,
        "pointsNeeded": POINTS_PER_LEVEL - in_level,
    }


def roll_lucky_solve(rng: random.Random | None = None) -> tuple[bool, int]:
    """Random 2x points on a small share of solves."""
    roll = (rng or random).random()
    if roll < LUCKY_SOLVE_CHANCE:
        return True, LUCKY_SOLVE_MULTIPLIER
    return False, 1


def daily_bonus_multiplier(date_key: str) -> tuple[bool, float]:
    """Deterministic per-day bonus, identical for every player.

    The seed is the sum of the date string's character codes.
    """
    seed = sum(ord(ch) for ch in date_key)
    pseudo_random = (math.sin(seed) + 1) / 2
    if pseudo_random >= DAILY_BONUS_CHANCE:
        return False, 1.0
    spread = DAILY_BONUS_MAX_MULTIPLIER - DAILY_BONUS_MIN_MULTIPLIER
    multiplier = _round_half_up((DAILY_BONUS_MIN_MULTIPLIER + pseudo_random * spread) * 10) / 10
    return True, multiplier


def next_streak(current: int, won: bool, last_play: date | None, today: date) -> int:
    """Streak after a final attempt.

    Loss resets to 0. A win continues the streak when the last play was
    the previous UTC day, keeps it on the same day, otherwise starts at 1.
    """
    if not won:
        return 0
    if last_play is None:
        return 1
    gap = days_between(last_play, today)
    if gap == 0:
        return current
    if gap == 1:
        return current + 1
    return 1


def difficulty_category(difficulty: int) -> str:
    if difficulty <= 3:
        return "easy"
    if difficulty <= 6:
        return "medium"
    return "hard"


def calculate_new_stats(
    stats,
    won: bool,
    attempts: int,
    time_spent: int | None = None,
    difficulty: int | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    hints_used: int = 0,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> tuple[dict, dict]:
    """Stats after a final attempt.

    Args:
        stats: Current UserStats row, or None for a first game
        won: Whether the final attempt was correct

    Returns:
        (column values to apply, summary of points earned and bonuses)
    """
    now = now or utc_now()
    today = now.date()

    def current(name, default=0):
        value = getattr(stats, name, None) if stats is not None else None
        return default if value is None else value

    last_play = current("last_play_date", None)
    last_play_day = last_play.date() if last_play else None

    streak = next_streak(current("streak"), won, last_play_day, today)
    daily_streak = next_streak(current("daily_challenge_streak"), won, last_play_day, today)

    points_earned = 0
    breakdown = None
    lucky, lucky_multiplier = False, 1
    has_bonus, bonus_multiplier = False, 1.0
    if won:
        breakdown = score_breakdown(attempts, time_spent, streak, difficulty, hints_used)
        lucky, lucky_multiplier = roll_lucky_solve(rng)
        has_bonus, bonus_multiplier = daily_bonus_multiplier(now.strftime(DATE_KEY_FORMAT))
        points_earned = _round_half_up(breakdown.total * lucky_multiplier * bonus_multiplier)

    points = current("points") + points_earned

    perfect = won and attempts == 1
    clutch = won and attempts == max_attempts
    speedy = won and time_spent is not None and time_spent < SPEED_SOLVE_SECONDS
    no_hint = not hints_used
    weekend = now.weekday() >= 5
    category = difficulty_category(difficulty if difficulty is not None else 5)

    fastest = current("fastest_solve_seconds", None)
    if won and time_spent is not None and (fastest is None or time_spent < fastest):
        fastest = time_spent

    no_hint_streak = current("no_hint_streak")
    if won:
        no_hint_streak = no_hint_streak + 1 if no_hint else 0

    consecutive_perfect = current("consecutive_perfect")
    if perfect:
        consecutive_perfect += 1
    elif won:
        consecutive_perfect = 0

    values = {
        "points": points,
        "streak": streak,
        "max_streak": max(current("max_streak"), streak),
        "total_games": current("total_games") + 1,
        "wins": current("wins") + (1 if won else 0),
        "level": calculate_level(points),
        "daily_challenge_streak": daily_streak,
        "last_play_date": now,
        "perfect_solves": current("perfect_solves") + (1 if perfect else 0),
        "clutch_solves": current("clutch_solves") + (1 if clutch else 0),
        "speed_solves": current("speed_solves") + (1 if speedy else 0),
        "fastest_solve_seconds": fastest,
        "total_time_played": current("total_time_played") + (time_spent or 0),
        "no_hint_streak": no_hint_streak,
        "max_no_hint_streak": max(current("max_no_hint_streak"), no_hint_streak),
        "consecutive_perfect": consecutive_perfect,
        "max_consecutive_perfect": max(current("max_consecutive_perfect"), consecutive_perfect),
        "weekend_solves": current("weekend_solves") + (1 if won and weekend else 0),
        "easy_puzzles_solved": current("easy_puzzles_solved") + (1 if won and category == "easy" else 0),
        "medium_puzzles_solved": current("medium_puzzles_solved") + (1 if won and category == "medium" else 0),
        "hard_puzzles_solved": current("hard_puzzles_solved") + (1 if won and category == "hard" else 0),
        "streak_freezes": current("streak_freezes", INITIAL_STREAK_FREEZES),
        "lucky_solve_count": current("lucky_solve_count") + (1 if lucky else 0),
    }
    if lucky:
        values["last_lucky_solve"] = now
    if has_bonus:
        values["last_bonus_multiplier"] = bonus_multiplier
        values["last_bonus_date"] = now

    summary = {
        "pointsEarned": points_earned,
        "breakdown": breakdown.to_dict() if breakdown else None,
        "luckySolve": lucky,
        "dailyBonus": bonus_multiplier if has_bonus else None,
        "streak": streak,
        "level": values["level"],
    }
    return values, summary
