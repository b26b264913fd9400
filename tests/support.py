"""Shared fixtures: temporary databases and a scripted AI client."""
from __future__ import annotations

import os
import tempfile
import unittest

from daily_puzzle.ai_client import AIResponse
from daily_puzzle.database import Database


def rebus_response(answer: str = "lighthouse", puzzle: str = "💡 🏠", difficulty: int = 5) -> str:
    return f"""PUZZLE: {puzzle}
ANSWER: {answer}
EXPLANATION: Light (💡) + House (🏠) = {answer}
CATEGORY: compound_words
DIFFICULTY: {difficulty}
HINT1: Found on a coast
HINT2: Guides ships at night
HINT3: A tall tower with a lamp"""


class StubAIClient:
    """Replays scripted responses; an Exception entry is raised instead."""

    provider = "stub"
    model = "stub-model"

    def __init__(self, responses=None, embedding=None):
        self.responses = list(responses if responses is not None else [rebus_response()])
        self.embedding = embedding if embedding is not None else [0.1, 0.2, 0.3]
        self.calls = 0
        self.prompts = []

    async def generate(self, prompt, temperature=0.9, max_tokens=500):
        self.calls += 1
        self.prompts.append(prompt)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return AIResponse(text=item, model=self.model, prompt_tokens=12, completion_tokens=34)

    async def embed(self, text):
        return list(self.embedding)


def temp_database_url(test: unittest.TestCase) -> str:
    tmpdir = tempfile.TemporaryDirectory()
    test.addCleanup(tmpdir.cleanup)
    return "sqlite+aiosqlite:///" + os.path.join(tmpdir.name, "test.db")


class DatabaseTestCase(unittest.IsolatedAsyncioTestCase):
    """Gives each test a fresh SQLite file."""

    async def asyncSetUp(self) -> None:
        self.database = Database(temp_database_url(self))
        await self.database.init()
        self.addAsyncCleanup(self.database.dispose)
