"""Inference collaborator – prompt in, text out.

Stages depend on the ``InferenceClient`` protocol only; the concrete
``GeminiClient`` talks to any OpenAI-compatible ``/chat/completions``
endpoint (Gemini's compatibility layer by default).  Tests inject their
own fakes.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Protocol

import httpx

from shared.determinism import LLM_DETERMINISTIC_PARAMS
from shared.errors import CollaboratorUnavailableError, MalformedResponseError

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://generativelanguage.googleapis.com/v1beta/openai"
DEFAULT_MODEL = "gemini-2.0-flash"


class InferenceClient(Protocol):
    async def complete(self, prompt: str) -> str: ...


class GeminiClient:
    """OpenAI-compatible chat-completions client with 429 back-off.

    Raises ``CollaboratorUnavailableError`` when no API key is configured
    or every retry failed, ``MalformedResponseError`` when the response
    envelope has no message content.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        api_base: str | None = None,
        max_tokens: int | None = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key if api_key is not None else os.environ.get("GEMINI_API_KEY", "")
        self.model = model or os.environ.get("GEMINI_MODEL", DEFAULT_MODEL)
        self.api_base = (api_base or os.environ.get("GEMINI_API_BASE", DEFAULT_API_BASE)).rstrip("/")
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.max_retries = max_retries
        self._transport = transport

    def with_max_tokens(self, max_tokens: int) -> "GeminiClient":
        """Return a copy of this client with a different output budget."""
        return GeminiClient(
            api_key=self.api_key,
            model=self.model,
            api_base=self.api_base,
            max_tokens=max_tokens,
            timeout=self.timeout,
            max_retries=self.max_retries,
            transport=self._transport,
        )

    async def complete(self, prompt: str) -> str:
        if not self.api_key:
            raise CollaboratorUnavailableError("No GEMINI_API_KEY set")

        payload: dict[str, object] = {
            "model": self.model,
            **LLM_DETERMINISTIC_PARAMS,
            "messages": [{"role": "user", "content": prompt}],
        }
        if self.max_tokens:
            payload["max_tokens"] = self.max_tokens

        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    resp = await client.post(
                        f"{self.api_base}/chat/completions",
                        headers={
                            "Authorization": f"Bearer {self.api_key}",
                            "Content-Type": "application/json",
                        },
                        json=payload,
                    )
                if resp.status_code == 429 and attempt < self.max_retries:
                    delay = 2 ** (attempt + 1)  # 2, 4, 8 seconds
                    logger.warning(
                        "Inference rate-limited (429), retrying in %ds (attempt %d/%d)",
                        delay, attempt + 1, self.max_retries,
                    )
                    await asyncio.sleep(delay)
                    continue
                if resp.status_code != 200:
                    logger.error(
                        "Inference HTTP %d from %s: %s",
                        resp.status_code, self.api_base, resp.text[:500],
                    )
                resp.raise_for_status()
                data = resp.json()
            except (httpx.HTTPError, ValueError) as exc:
                last_error = exc
                if attempt < self.max_retries:
                    delay = 2 ** (attempt + 1)
                    logger.warning(
                        "Inference error (attempt %d/%d): %s — retrying in %ds",
                        attempt + 1, self.max_retries, exc, delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                break

            try:
                content = data["choices"][0]["message"]["content"]
            except (KeyError, IndexError, TypeError) as exc:
                raise MalformedResponseError(f"Unexpected inference envelope: {exc!r}") from exc
            if not isinstance(content, str):
                raise MalformedResponseError("Inference content is not text")
            logger.debug("Inference returned %d chars from %s/%s", len(content), self.api_base, self.model)
            return content

        raise CollaboratorUnavailableError(
            f"Inference failed after {self.max_retries} retries: {last_error}"
        )
