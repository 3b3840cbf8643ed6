from __future__ import annotations

import logging
import threading

from lnstocks.services.symbol_index import SymbolSearchIndex

logger = logging.getLogger(__name__)


class IndexRebuildScheduler:
    def __init__(
        self,
        *,
        index: SymbolSearchIndex,
        interval_sec: float = 3600.0,
        build_on_start: bool = True,
    ) -> None:
        self.index = index
        self.interval_sec = interval_sec
        self.build_on_start = build_on_start
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.runs = 0

    def trigger(self) -> bool:
        self.runs += 1
        return self.index.build()

    def _loop(self) -> None:
        if self.build_on_start and not self._stop_event.is_set():
            self._safe_trigger()
        while not self._stop_event.wait(self.interval_sec):
            self._safe_trigger()

    def _safe_trigger(self) -> None:
        try:
            self.trigger()
        except Exception:  # pragma: no cover
            logger.exception("[INDEX][scheduler_error]")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="index-rebuild-worker")
        self._thread.start()
        logger.info("[INDEX][scheduler_start] interval_sec=%s", self.interval_sec)

    def stop(self, timeout: float = 1.0) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("[INDEX][scheduler_stop]")
