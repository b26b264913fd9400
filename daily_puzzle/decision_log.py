"""Fire-and-forget recording of AI decisions and errors.

Records go through a bounded queue drained by one background worker. A full
queue or a failed write drops the record with a warning; callers never wait on
the store and never see its errors.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from . import config
from .errors import classify_ai_error, extract_error_code
from .storage import DecisionStore

_LOGGER = logging.getLogger(__name__)

KIND_DECISION = "decision"
KIND_ERROR = "error"

_STOP = object()


def new_operation_id() -> str:
    return f"op_{uuid.uuid4().hex[:16]}"


class DecisionLog:
    """Bounded async side channel for AI bookkeeping."""

    def __init__(self, database, maxsize: int | None = None) -> None:
        self.database = database
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or config.DECISION_LOG_QUEUE_SIZE)
        self._worker: asyncio.Task | None = None
        self.dropped = 0
        self.written = 0

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="decision-log")

    async def stop(self, timeout: float = 5.0) -> None:
        """Flush what is queued, then stop the worker."""
        if self._worker is None:
            return
        try:
            self._queue.put_nowait(_STOP)
            await asyncio.wait_for(self._worker, timeout)
        except (asyncio.QueueFull, asyncio.TimeoutError):
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None

    async def join(self) -> None:
        """Wait until every queued record has been handled."""
        await self._queue.join()

    def submit(self, kind: str, record: dict[str, Any]) -> bool:
        """Queue a record without waiting. Returns False if it was dropped."""
        try:
            self._queue.put_nowait((kind, record))
        except asyncio.QueueFull:
            self.dropped += 1
            _LOGGER.warning("Decision log queue full, dropping %s record", kind)
            return False
        return True

    def track_decision(
        self,
        operation_id: str,
        decision_type: str,
        success: bool,
        provider: str | None = None,
        model: str | None = None,
        duration_ms: int = 0,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        steps: list | None = None,
        context: dict | None = None,
        result: dict | None = None,
        entity_id: str | None = None,
    ) -> bool:
        return self.submit(
            KIND_DECISION,
            {
                "operation_id": operation_id,
                "decision_type": decision_type,
                "provider": provider,
                "model": model,
                "success": success,
                "duration_ms": duration_ms,
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
                "steps": steps or [],
                "context": context or {},
                "result": result or {},
                "entity_id": entity_id,
            },
        )

    def track_error(
        self,
        message: str,
        code: str | None = None,
        operation_id: str | None = None,
        decision_type: str | None = None,
        provider: str | None = None,
        model: str | None = None,
    ) -> bool:
        """Classify an AI failure and queue it."""
        code = code or extract_error_code(message)
        error_type, severity, tags = classify_ai_error(message, code)
        return self.submit(
            KIND_ERROR,
            {
                "operation_id": operation_id,
                "decision_type": decision_type,
                "provider": provider,
                "model": model,
                "error_code": code,
                "error_type": error_type,
                "severity": severity,
                "message": message[:2000],
                "tags": tags,
            },
        )

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _STOP:
                    return
                await self._write(*item)
            finally:
                self._queue.task_done()

    async def _write(self, kind: str, record: dict[str, Any]) -> None:
        try:
            async with self.database.session() as session:
                store = DecisionStore(session)
                if kind == KIND_ERROR:
                    result = await store.add_error(record)
                else:
                    result = await store.add_decision(record)
        except Exception as e:
            _LOGGER.warning("Failed to write %s record: %s", kind, e)
            return

        if result.success:
            self.written += 1
        else:
            _LOGGER.warning("Failed to write %s record: %s", kind, result.error.message)
