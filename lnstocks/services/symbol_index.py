from __future__ import annotations

import logging
import threading
import time
from bisect import bisect_left
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

from pydantic import ValidationError

from lnstocks.errors import IndexNotReadyError, UpstreamDataInvalidError
from lnstocks.schemas.search import IndexStats, SearchDocument

logger = logging.getLogger(__name__)

RECOGNIZED_TYPES = frozenset({"Common Stock", "ETF", "ETP", "ADR", "REIT"})
RECOGNIZED_MARKETS = frozenset({"stocks"})


@dataclass(frozen=True)
class IndexSnapshot:
    """Point-in-time view of the symbol universe, never mutated after build."""

    documents: tuple[SearchDocument, ...]
    by_symbol: Mapping[str, SearchDocument]
    symbol_keys: tuple[str, ...]
    name_keys: tuple[str, ...]

    @classmethod
    def from_documents(cls, documents: Iterable[SearchDocument]) -> "IndexSnapshot":
        ordered = tuple(sorted(documents, key=lambda d: (d.symbol.lower(), d.symbol)))
        return cls(
            documents=ordered,
            by_symbol=MappingProxyType({d.symbol: d for d in ordered}),
            symbol_keys=tuple(d.symbol.lower() for d in ordered),
            name_keys=tuple(d.name.lower() for d in ordered),
        )

    def __len__(self) -> int:
        return len(self.documents)

    def search(self, query: str, cap: int) -> list[SearchDocument]:
        """Rank exact symbol, then symbol prefix, then name substring.

        ``query`` must already be lowercased and stripped.
        """
        keys = self.symbol_keys
        exact: list[int] = []
        prefix: list[int] = []
        start = end = bisect_left(keys, query)
        while end < len(keys) and keys[end].startswith(query):
            (exact if keys[end] == query else prefix).append(end)
            end += 1
        prefix.sort(key=lambda i: (len(keys[i]), keys[i]))

        ranked = exact + prefix
        if len(ranked) < cap:
            for i, name in enumerate(self.name_keys):
                if start <= i < end or query not in name:
                    continue
                ranked.append(i)
                if len(ranked) >= cap:
                    break

        return [self.documents[i] for i in ranked[:cap]]


class SymbolSearchIndex:
    """Searchable symbol universe, rebuilt wholesale in the background.

    Readers grab the current snapshot reference once per query, so a rebuild
    swapping in a new snapshot never disturbs a search in progress. Only one
    build runs at a time; overlapping ``build()`` calls return ``False``.
    """

    def __init__(
        self,
        *,
        upstream,
        result_cap: int = 20,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.upstream = upstream
        self.result_cap = result_cap
        self._clock = clock
        self._snapshot: IndexSnapshot | None = None
        self._stats = IndexStats()
        self._build_lock = threading.Lock()
        self._publish_lock = threading.Lock()

    @property
    def is_ready(self) -> bool:
        return self._snapshot is not None

    def _publish_stats(self, **changes: Any) -> None:
        with self._publish_lock:
            self._stats = self._stats.model_copy(update=changes)

    def build(self) -> bool:
        if not self._build_lock.acquire(blocking=False):
            with self._publish_lock:
                self._stats = self._stats.model_copy(
                    update={"skipped_builds": self._stats.skipped_builds + 1}
                )
            logger.info("[INDEX][build_skipped] reason=in_progress")
            return False

        try:
            return self._build_locked()
        finally:
            self._build_lock.release()

    def _build_locked(self) -> bool:
        previous_state = self._stats.state
        started_at = self._clock()
        t0 = time.perf_counter()
        self._publish_stats(state="building", last_build_started_at=started_at)
        logger.info("[INDEX][build_start] previous_state=%s", previous_state)

        try:
            documents, skipped = self._filter(self.upstream.fetch_symbol_universe())
            if not documents:
                raise UpstreamDataInvalidError("symbol universe is empty after filtering")
            snapshot = IndexSnapshot.from_documents(documents)
        except Exception as exc:
            duration_ms = round((time.perf_counter() - t0) * 1000, 3)
            self._publish_stats(
                state=previous_state,
                last_build_completed_at=self._clock(),
                last_build_duration_ms=duration_ms,
                last_build_error=f"{type(exc).__name__}: {exc}",
                build_count=self._stats.build_count + 1,
            )
            logger.warning(
                "[INDEX][build_failed] state=%s duration_ms=%.1f error=%s",
                previous_state,
                duration_ms,
                exc,
            )
            return False

        duration_ms = round((time.perf_counter() - t0) * 1000, 3)
        with self._publish_lock:
            self._snapshot = snapshot
            self._stats = self._stats.model_copy(
                update={
                    "is_initialized": True,
                    "state": "ready",
                    "document_count": len(snapshot),
                    "last_build_completed_at": self._clock(),
                    "last_build_duration_ms": duration_ms,
                    "last_build_error": None,
                    "build_count": self._stats.build_count + 1,
                }
            )
        logger.info(
            "[INDEX][build_done] documents=%d skipped=%d duration_ms=%.1f",
            len(snapshot),
            skipped,
            duration_ms,
        )
        return True

    @staticmethod
    def _filter(raw: Iterable[Any]) -> tuple[list[SearchDocument], int]:
        kept: dict[str, SearchDocument] = {}
        skipped = 0
        for item in raw or ():
            if not isinstance(item, SearchDocument):
                try:
                    item = SearchDocument.model_validate(item)
                except ValidationError:
                    skipped += 1
                    continue

            symbol = item.symbol.strip().upper()
            if (
                not symbol
                or not item.active
                or item.type not in RECOGNIZED_TYPES
                or item.market not in RECOGNIZED_MARKETS
            ):
                skipped += 1
                continue
            if symbol in kept:
                continue
            kept[symbol] = item.model_copy(update={"symbol": symbol, "name": item.name.strip() or symbol})
        return list(kept.values()), skipped

    def search(self, query: str, limit: int | None = None) -> list[SearchDocument]:
        needle = str(query or "").strip().lower()
        if not needle:
            return []

        snapshot = self._snapshot
        if snapshot is None:
            return []

        cap = self.result_cap if limit is None else max(0, min(int(limit), self.result_cap))
        return snapshot.search(needle, cap)

    def require_ready(self) -> IndexSnapshot:
        snapshot = self._snapshot
        if snapshot is None:
            raise IndexNotReadyError("symbol index is initializing")
        return snapshot

    def lookup(self, symbol: str) -> SearchDocument | None:
        return self.require_ready().by_symbol.get(str(symbol or "").strip().upper())

    def get_stats(self) -> IndexStats:
        with self._publish_lock:
            return self._stats
