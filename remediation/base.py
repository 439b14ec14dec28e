"""Shared fan-out contract for the Classify, Patch and Verify stages.

Each stage maps N input records to exactly N output records.  All N
inference calls are issued together and joined once every one of them
has settled; a call that raises or times out is replaced by the stage's
sentinel in the same slot, so output[i] always corresponds to input[i].
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Generic, Sequence, TypeVar

from remediation.inference import InferenceClient

logger = logging.getLogger(__name__)

In = TypeVar("In")
Out = TypeVar("Out")

DEFAULT_ITEM_TIMEOUT = 60.0


async def fan_out(
    items: Sequence[In],
    worker: Callable[[In], Awaitable[Out]],
    fallback: Callable[[In, BaseException], Out],
    timeout: float | None = DEFAULT_ITEM_TIMEOUT,
    max_concurrency: int | None = None,
) -> list[Out]:
    """Run *worker* on every item concurrently, substituting *fallback* on error.

    No task is cancelled because a sibling failed; ``asyncio.gather`` only
    returns once every slot holds either a real result or a sentinel.
    """
    semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None

    async def _slot(item: In) -> Out:
        try:
            if semaphore is None:
                return await asyncio.wait_for(worker(item), timeout=timeout)
            async with semaphore:
                return await asyncio.wait_for(worker(item), timeout=timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return fallback(item, exc)

    return list(await asyncio.gather(*(_slot(item) for item in items)))


class FanOutStage(ABC, Generic[In, Out]):
    """Base class for an index-aligned, per-item-fallible pipeline stage."""

    name: str = "stage"

    def __init__(
        self,
        inference: InferenceClient,
        timeout: float | None = DEFAULT_ITEM_TIMEOUT,
        max_concurrency: int | None = None,
    ):
        self.inference = inference
        self.timeout = timeout
        self.max_concurrency = max_concurrency

    @abstractmethod
    async def process(self, item: In) -> Out:
        """Produce the real output for one item.  May raise."""
        ...

    @abstractmethod
    def fallback(self, item: In, error: BaseException) -> Out:
        """Sentinel output for an item whose processing failed."""
        ...

    async def run(self, items: Sequence[In]) -> list[Out]:
        if not items:
            logger.info("[%s] Nothing to process", self.name)
            return []

        logger.info("[%s] Processing %d item(s)…", self.name, len(items))
        degraded: list[Any] = []

        def _fallback(item: In, error: BaseException) -> Out:
            degraded.append(item)
            logger.warning(
                "[%s] Item %s degraded to sentinel: %s: %s",
                self.name, getattr(item, "id", "?"), type(error).__name__, error,
            )
            return self.fallback(item, error)

        results = await fan_out(
            items,
            self.process,
            _fallback,
            timeout=self.timeout,
            max_concurrency=self.max_concurrency,
        )
        logger.info(
            "[%s] Done: %d item(s), %d degraded", self.name, len(results), len(degraded),
        )
        return results

    def __repr__(self) -> str:
        return f"<Stage: {self.name}>"
