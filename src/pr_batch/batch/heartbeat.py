"""Progress heartbeat for long-running agent calls."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from types import TracebackType

logger = logging.getLogger(__name__)


class Heartbeat:
    """Poll a liveness probe on a fixed interval and log status.

    The heartbeat never influences control flow: it only reports. `stop()` is idempotent and
    must be called once the observed call returns (the context manager does it).
    """

    def __init__(
        self,
        *,
        label: str,
        interval_seconds: float,
        is_alive: Callable[[], bool],
    ) -> None:
        self.label = label
        self.interval_seconds = interval_seconds
        self._is_alive = is_alive
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._started_at = 0.0
        self.beats = 0

    def start(self) -> None:
        if self._thread is not None or self.interval_seconds <= 0:
            return
        self._stop.clear()
        self._started_at = time.monotonic()
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name=f"heartbeat-{self.label}",
        )
        self._thread.start()

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=5)
        self._thread = None

    def __enter__(self) -> Heartbeat:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.stop()

    def _loop(self) -> None:
        while not self._stop.wait(timeout=self.interval_seconds):
            elapsed = int(time.monotonic() - self._started_at)
            try:
                alive = self._is_alive()
            except Exception:  # noqa: BLE001
                logger.debug("Heartbeat probe failed for %s", self.label, exc_info=True)
                continue
            self.beats += 1
            if alive:
                logger.info("%s still running (%dm %ds elapsed)", self.label, *divmod(elapsed, 60))
            else:
                logger.info("%s process exited, collecting result", self.label)
