"""AI puzzle generation with quality and uniqueness gates."""
from __future__ import annotations

import difflib
import logging
import re
import time
from dataclasses import dataclass, field

from . import config
from .const import (
    PUZZLE_TYPE_CAESAR_CIPHER,
    PUZZLE_TYPE_LOGIC_GRID,
    PUZZLE_TYPE_NUMBER_SEQUENCE,
    PUZZLE_TYPE_REBUS,
    PUZZLE_TYPE_RIDDLE,
    PUZZLE_TYPES,
)
from .decision_log import new_operation_id
from .errors import AIError, GenerationError, QualityRejectedError, QuotaExceededError
from .storage import PuzzleStore

_LOGGER = logging.getLogger(__name__)

DECISION_TYPE = "puzzle_generation"
UNIQUENESS_THRESHOLD = 60
RECENT_PUZZLE_WINDOW = 60

_TYPE_INSTRUCTIONS = {
    PUZZLE_TYPE_REBUS: """PUZZLE TYPE - REBUS:
Build a visual word puzzle from emojis, symbols, numbers and short words.
The pieces combine (by meaning or by sound) into a common word or phrase.
Example: PUZZLE: ☀️ 🌻 -> ANSWER: SUNFLOWER""",
    PUZZLE_TYPE_LOGIC_GRID: """PUZZLE TYPE - LOGIC GRID:
Describe a small deduction puzzle: 3 people, 3 attributes each.
List the categories and at least 3 clues; the answer is one single fact
that can only be deduced from the clues (for example a name).
Add the extra lines:
CATEGORIES: People: Ann, Ben, Cal | Pets: cat, dog, fish
CLUE1: ...
CLUE2: ...
CLUE3: ...""",
    PUZZLE_TYPE_CAESAR_CIPHER: """PUZZLE TYPE - CAESAR CIPHER:
Pick a common word or short phrase and shift every letter by the same amount.
The PUZZLE line holds only the encoded text; the answer is the decoded text.
One hint should reveal the shift direction, not the amount.""",
    PUZZLE_TYPE_RIDDLE: """PUZZLE TYPE - RIDDLE:
Write a short riddle (two to four lines joined into one line with " / ").
The answer is a single common word or short phrase.""",
    PUZZLE_TYPE_NUMBER_SEQUENCE: """PUZZLE TYPE - NUMBER SEQUENCE:
Give 5 to 7 numbers of a sequence separated by commas, ending with "?".
The answer is the next number. The rule must be unambiguous.""",
}


@dataclass
class GenerationResult:
    """A generated puzzle that passed the quality and novelty gates."""

    puzzle: dict
    quality_score: float
    uniqueness_score: float
    tokens_used: int
    attempts: int
    operation_id: str
    steps: list = field(default_factory=list)


def difficulty_instruction(difficulty: int) -> str:
    if difficulty <= 3:
        return f"""EASY PUZZLE (Difficulty {difficulty}/10):
Choose a common, everyday answer that most people would know.
Use simple, straightforward hints."""
    if difficulty <= 6:
        return f"""MEDIUM PUZZLE (Difficulty {difficulty}/10):
Choose a moderately familiar answer.
Make hints clear but not too obvious."""
    return f"""HARD PUZZLE (Difficulty {difficulty}/10):
Choose a less common but still recognizable answer.
Make hints more challenging and require some thought."""


def build_prompt(puzzle_type: str, difficulty: int, avoid_answers: list[str] | None = None) -> str:
    """Build the generation prompt for a puzzle type and difficulty."""
    avoid = ""
    if avoid_answers:
        avoid = "\nDo NOT use any of these recent answers: " + ", ".join(avoid_answers[:20]) + "\n"

    return f"""You are a creative puzzle generator. Generate a unique daily puzzle.

{_TYPE_INSTRUCTIONS[puzzle_type]}

{difficulty_instruction(difficulty)}
{avoid}
Rules:
- The PUZZLE line must never contain the answer itself
- Give exactly three hints, from vague to specific
- The explanation says why the answer is correct

Format your response EXACTLY like this:
PUZZLE: <what the player sees>
ANSWER: <the answer>
EXPLANATION: <one sentence>
CATEGORY: <one or two words>
DIFFICULTY: {difficulty}
HINT1: <vague hint>
HINT2: <clearer hint>
HINT3: <specific hint>

Generate a creative puzzle now:"""


_LINE_RE = re.compile(r"^\s*\**\s*([A-Z]+)(\d*)\s*\**\s*:\s*(.*)$", re.IGNORECASE)


def parse_puzzle_response(text: str, puzzle_type: str = PUZZLE_TYPE_REBUS) -> dict | None:
    """Parse LLM response into structured puzzle data.

    Args:
        text: Raw text response from the AI
        puzzle_type: Type the prompt asked for

    Returns:
        Puzzle dict or None if required fields are missing
    """
    fields: dict[str, str] = {}
    hints: list[str] = []
    clues: list[str] = []

    for line in text.strip().split("\n"):
        match = _LINE_RE.match(line)
        if not match:
            continue
        key, _, value = match.group(1).upper(), match.group(2), match.group(3).strip()
        if not value:
            continue
        if key == "HINT":
            hints.append(value)
        elif key == "CLUE":
            clues.append(value)
        elif key not in fields:
            fields[key] = value

    answer = fields.get("ANSWER", "").strip()
    puzzle_text = fields.get("PUZZLE", "").strip()

    if puzzle_type == PUZZLE_TYPE_LOGIC_GRID:
        if len(clues) < 3:
            _LOGGER.warning("Incomplete logic grid: clues=%d", len(clues))
            return None
        puzzle_text = puzzle_text or "\n\n".join(clues)

    if not answer or not puzzle_text:
        _LOGGER.warning("Incomplete puzzle: puzzle=%s, answer=%s", bool(puzzle_text), bool(answer))
        return None

    difficulty = int(re.sub(r"[^\d]", "", fields.get("DIFFICULTY", "").split("/")[0]) or 0)
    difficulty = min(difficulty, 10)

    metadata: dict = {}
    if clues:
        metadata["clues"] = clues
    if fields.get("CATEGORIES"):
        metadata["categories"] = [part.strip() for part in fields["CATEGORIES"].split("|") if part.strip()]

    return {
        "puzzle": puzzle_text,
        "answer": answer,
        "explanation": fields.get("EXPLANATION", ""),
        "category": fields.get("CATEGORY", puzzle_type),
        "difficulty": difficulty or None,
        "hints": hints[:5],
        "puzzle_type": puzzle_type,
        "metadata": metadata,
    }


def normalize_text(value: str) -> str:
    """Lowercase and drop everything but letters and digits."""
    return re.sub(r"[^a-z0-9]", "", value.lower())


def score_quality(puzzle: dict, target_difficulty: int) -> float:
    """Heuristic 0-100 quality score.

    Required fields are worth 40, explanation 15, category 5, hints 5 each
    (max 15), no answer leakage 15, and difficulty closeness up to 10.
    A puzzle whose text gives the answer away loses 30 instead.
    """
    score = 0.0
    if puzzle.get("puzzle") and puzzle.get("answer"):
        score += 40
    if puzzle.get("explanation"):
        score += 15
    if puzzle.get("category"):
        score += 5
    score += min(len(puzzle.get("hints") or []), 3) * 5

    answer = normalize_text(puzzle.get("answer", ""))
    text = normalize_text(puzzle.get("puzzle", ""))
    if answer and answer in text:
        score -= 30
    else:
        score += 15

    difficulty = puzzle.get("difficulty") or target_difficulty
    score += max(0, 10 - 3 * abs(difficulty - target_difficulty))

    return max(0.0, min(100.0, score))


def _symbols(value: str) -> set[str]:
    """Non-ASCII characters (emoji and symbols) plus lowercase words."""
    return {ch for ch in value if ord(ch) > 127 and not ch.isspace()} | set(re.findall(r"[a-z0-9]+", value.lower()))


def similarity(candidate: dict, other: dict) -> float:
    """0-1 similarity: answer edit ratio (0.6) plus shared symbols (0.4)."""
    answer_sim = difflib.SequenceMatcher(
        None, normalize_text(candidate.get("answer", "")), normalize_text(other.get("answer", ""))
    ).ratio()

    left = _symbols(candidate.get("puzzle", ""))
    right = _symbols(other.get("puzzle", ""))
    union = left | right
    symbol_sim = len(left & right) / len(union) if union else 0.0

    return answer_sim * 0.6 + symbol_sim * 0.4


def score_uniqueness(candidate: dict, recent: list[dict]) -> float:
    """100 minus the closest match against recent puzzles, as a percentage."""
    if not recent:
        return 100.0
    answer = normalize_text(candidate.get("answer", ""))
    if any(normalize_text(other.get("answer", "")) == answer for other in recent):
        return 0.0
    closest = max(similarity(candidate, other) for other in recent)
    return round((1 - closest) * 100, 1)


class PuzzleGenerator:
    """Generates puzzles through the AI client, retrying until one passes."""

    def __init__(self, ai_client, database=None, decision_log=None) -> None:
        self.ai_client = ai_client
        self.database = database
        self.decision_log = decision_log

    async def _recent_puzzles(self) -> list[dict]:
        if self.database is None:
            return []
        async with self.database.session() as session:
            result = await PuzzleStore(session).recent(RECENT_PUZZLE_WINDOW)
        if not result.success:
            _LOGGER.warning("Could not load recent puzzles for novelty check: %s", result.error.message)
            return []
        return [{"puzzle": p.display_text, "answer": p.answer} for p in result.data]

    def _track_error(self, error: AIError, operation_id: str) -> None:
        if self.decision_log is not None:
            self.decision_log.track_error(
                error.message,
                error.code,
                operation_id=operation_id,
                decision_type=DECISION_TYPE,
                provider=getattr(self.ai_client, "provider", None),
                model=getattr(self.ai_client, "model", None),
            )

    async def generate(
        self,
        target_difficulty: int,
        puzzle_type: str = PUZZLE_TYPE_REBUS,
        require_novelty: bool = True,
        quality_threshold: float | None = None,
        max_attempts: int | None = None,
    ) -> GenerationResult:
        """Generate one puzzle.

        Each attempt prompts the model, parses the reply and scores it;
        rejected or failed attempts are retried up to `max_attempts` times.

        Raises:
            GenerationError: every attempt failed
        """
        if puzzle_type not in PUZZLE_TYPES:
            raise GenerationError(f"Unknown puzzle type: {puzzle_type}")

        quality_threshold = config.QUALITY_THRESHOLD if quality_threshold is None else quality_threshold
        max_attempts = max_attempts or config.GENERATION_MAX_ATTEMPTS
        operation_id = new_operation_id()
        started = time.monotonic()

        recent = await self._recent_puzzles() if require_novelty else []
        prompt = build_prompt(puzzle_type, target_difficulty, [p["answer"] for p in recent])

        steps: list[dict] = []
        prompt_tokens = completion_tokens = 0
        last_error: AIError | None = None

        for attempt in range(1, max_attempts + 1):
            temperature = min(0.85 + target_difficulty * 0.05 + (attempt - 1) * 0.05, 1.5)
            try:
                response = await self.ai_client.generate(prompt, temperature=temperature)
            except AIError as e:
                _LOGGER.warning("Generation attempt %d/%d failed: %s", attempt, max_attempts, e.message)
                steps.append({"attempt": attempt, "status": "error", "code": e.code, "message": e.message})
                self._track_error(e, operation_id)
                last_error = e
                if isinstance(e, QuotaExceededError):
                    break
                continue

            prompt_tokens += response.prompt_tokens
            completion_tokens += response.completion_tokens

            puzzle = parse_puzzle_response(response.text, puzzle_type)
            if puzzle is None:
                last_error = GenerationError("Invalid response format from AI")
                steps.append({"attempt": attempt, "status": "invalid"})
                self._track_error(last_error, operation_id)
                continue
            puzzle["difficulty"] = puzzle["difficulty"] or target_difficulty

            quality = score_quality(puzzle, target_difficulty)
            uniqueness = score_uniqueness(puzzle, recent) if require_novelty else 100.0
            steps.append({
                "attempt": attempt,
                "status": "scored",
                "answer": puzzle["answer"],
                "quality": quality,
                "uniqueness": uniqueness,
            })

            if quality < quality_threshold:
                last_error = QualityRejectedError(
                    f"Puzzle rejected: quality {quality:.0f} below {quality_threshold}", quality
                )
            elif require_novelty and uniqueness < UNIQUENESS_THRESHOLD:
                last_error = QualityRejectedError(
                    f"Puzzle rejected: uniqueness {uniqueness:.0f} below {UNIQUENESS_THRESHOLD}", uniqueness
                )
            else:
                puzzle["metadata"].update({
                    "qualityScore": quality,
                    "uniquenessScore": uniqueness,
                    "operationId": operation_id,
                    "attempts": attempt,
                    "model": response.model,
                })
                result = GenerationResult(
                    puzzle=puzzle,
                    quality_score=quality,
                    uniqueness_score=uniqueness,
                    tokens_used=prompt_tokens + completion_tokens,
                    attempts=attempt,
                    operation_id=operation_id,
                    steps=steps,
                )
                self._track_outcome(operation_id, True, started, prompt_tokens, completion_tokens, steps, {
                    "answer": puzzle["answer"],
                    "puzzleType": puzzle_type,
                    "qualityScore": quality,
                    "uniquenessScore": uniqueness,
                })
                _LOGGER.info(
                    "Generated %s puzzle on attempt %d (quality %.0f, uniqueness %.0f)",
                    puzzle_type, attempt, quality, uniqueness,
                )
                return result

            _LOGGER.info("Attempt %d/%d: %s", attempt, max_attempts, last_error.message)
            self._track_error(last_error, operation_id)

        self._track_outcome(operation_id, False, started, prompt_tokens, completion_tokens, steps, {
            "puzzleType": puzzle_type,
            "error": last_error.message if last_error else None,
        })
        message = f"All {len(steps)} generation attempts failed"
        if last_error is not None:
            message += f": {last_error.message}"
        raise GenerationError(message) from last_error

    def _track_outcome(self, operation_id, success, started, prompt_tokens, completion_tokens, steps, result):
        if self.decision_log is None:
            return
        self.decision_log.track_decision(
            operation_id,
            DECISION_TYPE,
            success,
            provider=getattr(self.ai_client, "provider", None),
            model=getattr(self.ai_client, "model", None),
            duration_ms=int((time.monotonic() - started) * 1000),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            steps=steps,
            result=result,
        )
