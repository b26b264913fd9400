"""Error taxonomy for database and AI failures."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


# Database errors

class DatabaseError(Exception):
    """Base database error carrying a machine-readable code."""

    def __init__(self, message: str, code: str = "UNKNOWN_ERROR", details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details

    def to_dict(self) -> dict:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
        }


class NotFoundError(DatabaseError):
    def __init__(self, resource: str, identifier: str | None = None) -> None:
        message = f"{resource} not found" + (f": {identifier}" if identifier else "")
        super().__init__(message, "NOT_FOUND", {"resource": resource, "identifier": identifier})


class ValidationError(DatabaseError):
    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message, "VALIDATION_ERROR", {"field": field})


class UniqueConstraintError(DatabaseError):
    def __init__(self, field: str, value: str | None = None) -> None:
        message = f"{field} already exists" + (f": {value}" if value else "")
        super().__init__(message, "UNIQUE_VIOLATION", {"field": field, "value": value})


class ForeignKeyError(DatabaseError):
    def __init__(self, table: str, field: str) -> None:
        super().__init__(
            f"Referenced {field} does not exist in {table}",
            "FOREIGN_KEY_VIOLATION",
            {"table": table, "field": field},
        )


class DatabaseConnectionError(DatabaseError):
    def __init__(self, details: Any = None) -> None:
        super().__init__("Failed to connect to database", "CONNECTION_ERROR", details)


class TransactionError(DatabaseError):
    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message, "TRANSACTION_ERROR", details)


_UNIQUE_FIELD_RE = re.compile(r"UNIQUE constraint failed: (?:index '([^']+)'|([\w.]+))")


def _sqlstate(error: DBAPIError) -> str | None:
    orig = getattr(error, "orig", None)
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def parse_db_error(error: BaseException) -> DatabaseError:
    """Normalize a driver/ORM exception into the taxonomy above."""
    if isinstance(error, DatabaseError):
        return error

    message = str(getattr(error, "orig", None) or error)

    if isinstance(error, DBAPIError):
        state = _sqlstate(error) or ""

        if state == "23505" or "UNIQUE constraint failed" in message:
            match = _UNIQUE_FIELD_RE.search(message)
            field = (match.group(1) or match.group(2)) if match else "field"
            return UniqueConstraintError(field)

        if state == "23503" or "FOREIGN KEY constraint failed" in message:
            orig = getattr(error, "orig", None)
            return ForeignKeyError(
                getattr(orig, "table_name", None) or "table",
                getattr(orig, "column_name", None) or "field",
            )

        if isinstance(error, IntegrityError):
            return ValidationError(message)

        if state.startswith("40") or "deadlock" in message.lower() or "database is locked" in message:
            return TransactionError(message or "Transaction failed", {"sqlstate": state})

        if state.startswith("08") or isinstance(error, (OperationalError, InterfaceError)):
            return DatabaseConnectionError({"sqlstate": state, "message": message})

    if isinstance(error, (ConnectionError, OSError)):
        return DatabaseConnectionError({"message": message})

    return DatabaseError(message or "Unknown database error", "UNKNOWN_ERROR", {"type": type(error).__name__})


@dataclass
class DbResult(Generic[T]):
    """Tagged result of a database operation; branch on `success`."""

    success: bool
    data: T | None = None
    error: DatabaseError | None = None

    @classmethod
    def ok(cls, data: T) -> "DbResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: DatabaseError) -> "DbResult[T]":
        return cls(success=False, error=error)


async def wrap_db_operation(operation: Callable[[], Awaitable[T]]) -> DbResult[T]:
    """Run a store operation, returning a DbResult instead of raising."""
    try:
        return DbResult.ok(await operation())
    except Exception as e:
        db_error = parse_db_error(e)
        _LOGGER.warning("Database operation failed [%s]: %s", db_error.code, db_error.message)
        return DbResult.fail(db_error)


# AI errors

class AIError(Exception):
    """Base AI provider/generation error."""

    def __init__(self, message: str, code: str = "AI_ERROR", status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


class QuotaExceededError(AIError):
    def __init__(self, message: str = "AI quota exceeded. Please try again later.") -> None:
        super().__init__(message, "QUOTA_EXCEEDED", 429)


class AIProviderError(AIError):
    def __init__(self, message: str, provider: str, status_code: int | None = None) -> None:
        super().__init__(message, "PROVIDER_ERROR", status_code)
        self.provider = provider


class AITimeoutError(AIError):
    def __init__(self, message: str = "AI request timed out") -> None:
        super().__init__(message, "TIMEOUT", 504)


class GenerationError(AIError):
    def __init__(self, message: str) -> None:
        super().__init__(message, "GENERATION_FAILED")


class QualityRejectedError(AIError):
    def __init__(self, message: str, score: float | None = None) -> None:
        super().__init__(message, "QUALITY_REJECTED")
        self.score = score


ERROR_TYPE_QUOTA = "quota"
ERROR_TYPE_TIMEOUT = "timeout"
ERROR_TYPE_VALIDATION = "validation"
ERROR_TYPE_QUALITY = "quality"
ERROR_TYPE_PROVIDER = "provider"
ERROR_TYPE_GENERATION = "generation"
ERROR_TYPE_UNKNOWN = "unknown"


def classify_ai_error(message: str, code: str | None = None) -> tuple[str, str, list[str]]:
    """Classify an AI failure by inspecting its message.

    Returns:
        (error_type, severity, tags)
    """
    lower = message.lower()
    code = code or ""

    if "quota" in lower or "rate limit" in lower or code == "QUOTA_EXCEEDED":
        return ERROR_TYPE_QUOTA, "major", ["quota"]
    if "timeout" in lower or "timed out" in lower or code == "TIMEOUT":
        return ERROR_TYPE_TIMEOUT, "minor", ["timeout"]
    if "validation" in lower or "invalid" in lower or code.startswith("VALIDATION"):
        return ERROR_TYPE_VALIDATION, "minor", ["validation"]
    if "quality" in lower or "rejected" in lower or code == "QUALITY_REJECTED":
        return ERROR_TYPE_QUALITY, "warning", ["quality"]
    if "api" in lower or "service" in lower or "unavailable" in lower or code == "PROVIDER_ERROR":
        return ERROR_TYPE_PROVIDER, "major", ["provider"]
    if "generate" in lower or "failed to create" in lower or code == "GENERATION_FAILED":
        return ERROR_TYPE_GENERATION, "major", ["generation"]
    return ERROR_TYPE_UNKNOWN, "minor", ["unknown"]


_CODE_RE = re.compile(r"\b([A-Z_]+_ERROR|[A-Z_]+_FAILED|[A-Z_]+_EXCEEDED)\b")


def extract_error_code(message: str) -> str:
    """Best-effort error code from a message with no explicit code."""
    match = _CODE_RE.search(message)
    if match:
        return match.group(1)

    lower = message.lower()
    if "quota" in lower:
        return "QUOTA_EXCEEDED"
    if "timeout" in lower:
        return "TIMEOUT"
    if "validation" in lower:
        return "VALIDATION_ERROR"
    if "rate limit" in lower:
        return "RATE_LIMIT_EXCEEDED"
    return "UNKNOWN_ERROR"
