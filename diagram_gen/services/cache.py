import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable

from diagram_gen.database import RecordStore
from diagram_gen.models import (
    CacheEntry,
    GenerationResult,
    result_from_record,
    result_to_record,
)

logger = logging.getLogger(__name__)

CACHE_KIND = "diagram_cache"


def cache_key(fingerprint: str) -> str:
    return f"cache:{fingerprint}"


class ResultCache:
    """Two-tier memo of generation results keyed by request fingerprint.

    Lookups go to the in-process dict first, then the durable store; a
    durable hit is copied into the fast tier.  Concurrent callers with the
    same fingerprint share one in-flight computation.
    """

    def __init__(self, store: RecordStore) -> None:
        self.store = store
        self._entries: dict[str, CacheEntry] = {}
        self._inflight: dict[str, asyncio.Task] = {}

    async def lookup(self, fingerprint: str) -> GenerationResult | None:
        entry = self._entries.get(fingerprint)
        if entry is None:
            record = await self.store.get(cache_key(fingerprint))
            if record is None:
                return None
            entry = result_from_record(record)
            self._entries[fingerprint] = entry
            logger.debug("Durable cache hit for %s", fingerprint)
        return dataclasses.replace(entry.result, from_cache=True)

    async def store_result(self, fingerprint: str, result: GenerationResult) -> None:
        entry = CacheEntry(fingerprint, dataclasses.replace(result, from_cache=False))
        record = result_to_record(entry)
        record["kind"] = CACHE_KIND
        await self.store.put(cache_key(fingerprint), record)
        self._entries[fingerprint] = entry

    async def get_or_compute(
        self,
        fingerprint: str,
        compute: Callable[[], Awaitable[GenerationResult]],
        *,
        bypass: bool = False,
        should_store: Callable[[GenerationResult], bool] | None = None,
    ) -> GenerationResult:
        """Return the cached result or run *compute* exactly once.

        ``bypass`` skips both lookups but still coalesces with an in-flight
        computation and stores the fresh result.  ``should_store`` can veto
        storing a result.  A failed computation is not stored; every waiter
        sees the exception.
        """
        task = self._inflight.get(fingerprint)
        if task is None:
            if not bypass:
                cached = await self.lookup(fingerprint)
                if cached is not None:
                    logger.info("Cache hit for %s", fingerprint)
                    return cached
                # Another caller may have started (or finished) while we awaited the store.
                task = self._inflight.get(fingerprint)
                entry = self._entries.get(fingerprint)
                if task is None and entry is not None:
                    return dataclasses.replace(entry.result, from_cache=True)
            if task is None:
                task = asyncio.ensure_future(self._compute_and_store(fingerprint, compute, should_store))
                self._inflight[fingerprint] = task
                task.add_done_callback(lambda t: self._forget(fingerprint, t))
        else:
            logger.debug("Joining in-flight computation for %s", fingerprint)

        # shield: a cancelled waiter must not cancel the shared computation
        return await asyncio.shield(task)

    async def _compute_and_store(
        self,
        fingerprint: str,
        compute: Callable[[], Awaitable[GenerationResult]],
        should_store: Callable[[GenerationResult], bool] | None,
    ) -> GenerationResult:
        result = await compute()
        if should_store is None or should_store(result):
            await self.store_result(fingerprint, result)
        return dataclasses.replace(result, from_cache=False)

    def _forget(self, fingerprint: str, task: asyncio.Task) -> None:
        if self._inflight.get(fingerprint) is task:
            del self._inflight[fingerprint]

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    def clear(self) -> None:
        """Drop the fast tier; the durable tier is left to the store."""
        self._entries.clear()
