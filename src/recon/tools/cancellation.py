"""Process-wide registry of run keys whose cancellation has been requested."""

from __future__ import annotations

import logging
import threading
from typing import Set

LOGGER = logging.getLogger(__name__)


class CancellationRegistry:
    """Thread-safe set of run keys.

    A check made after a request for the same key observes it; nothing else
    about ordering is promised.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._requested: Set[str] = set()

    def request(self, run_key: str) -> None:
        with self._lock:
            self._requested.add(run_key)
        LOGGER.info("Cancellation requested for run %s", run_key)

    def is_requested(self, run_key: str | None) -> bool:
        if not run_key:
            return False
        with self._lock:
            return run_key in self._requested

    def clear(self, run_key: str) -> None:
        with self._lock:
            self._requested.discard(run_key)


_DEFAULT_REGISTRY = CancellationRegistry()


def default_registry() -> CancellationRegistry:
    """Return the registry shared by every orchestrator in this process."""
    return _DEFAULT_REGISTRY


__all__ = ["CancellationRegistry", "default_registry"]
