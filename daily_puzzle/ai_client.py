"""
Ollama client for puzzle generation
"""
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass

import httpx

from . import config
from .errors import AIProviderError, AITimeoutError, QuotaExceededError

_LOGGER = logging.getLogger(__name__)

PROVIDER = "ollama"


@dataclass
class AIResponse:
    """Generated text plus token usage reported by the provider."""

    text: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    duration_ms: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class OllamaClient:
    """Async client for an Ollama-compatible generation API."""

    provider = PROVIDER

    def __init__(
        self,
        url: str | None = None,
        model: str | None = None,
        embed_model: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = (url or config.OLLAMA_URL).rstrip("/")
        self.model = model or config.OLLAMA_MODEL
        self.embed_model = embed_model or config.OLLAMA_EMBED_MODEL
        self.timeout = timeout or config.AI_TIMEOUT
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _post(self, path: str, payload: dict) -> dict:
        """POST to the provider, mapping transport failures to AI errors."""
        try:
            async with self._client() as client:
                response = await client.post(f"{self.url}{path}", json=payload)
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException as e:
            raise AITimeoutError(f"AI request timed out after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 429:
                raise QuotaExceededError() from e
            raise AIProviderError(
                f"AI service returned {status}: {e.response.text[:200]}", PROVIDER, status
            ) from e
        except httpx.HTTPError as e:
            raise AIProviderError(f"AI service unavailable: {e}", PROVIDER) from e
        except ValueError as e:
            raise AIProviderError(f"Invalid JSON from AI service: {e}", PROVIDER) from e

    async def generate(self, prompt: str, temperature: float = 0.9, max_tokens: int = 500) -> AIResponse:
        """Generate a completion for a prompt.

        Args:
            prompt: Full prompt text
            temperature: Sampling temperature
            max_tokens: Upper bound on generated tokens

        Returns:
            AIResponse with the raw text and token counts
        """
        # Timestamp + random seed so repeated prompts don't repeat puzzles
        seed = int(time.time() * 1000) + random.randint(0, 100000)
        started = time.monotonic()

        result = await self._post(
            "/api/generate",
            {
                "model": self.model,
                "prompt": prompt,
                "stream": False,
                "options": {
                    "temperature": temperature,
                    "top_k": 50,
                    "top_p": 0.95,
                    "num_predict": max_tokens,
                    "seed": seed,
                },
            },
        )

        text = result.get("response", "")
        if not text.strip():
            raise AIProviderError("AI service returned an empty response", PROVIDER)

        return AIResponse(
            text=text,
            model=result.get("model", self.model),
            prompt_tokens=result.get("prompt_eval_count", 0) or 0,
            completion_tokens=result.get("eval_count", 0) or 0,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    async def embed(self, text: str) -> list[float]:
        """Embedding vector for similarity checks."""
        result = await self._post("/api/embeddings", {"model": self.embed_model, "prompt": text})
        embedding = result.get("embedding")
        if not embedding:
            raise AIProviderError("AI service returned no embedding", PROVIDER)
        return [float(value) for value in embedding]
