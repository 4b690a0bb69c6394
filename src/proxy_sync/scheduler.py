"""Fixed-interval ticker for the reconciliation loop."""
from __future__ import annotations

import threading

from .config_env import RECONCILE_INTERVAL_S


class IntervalTicker:
    """Blocks for a fixed interval between cycles; wakes early on stop."""

    def __init__(self, interval_s: float = RECONCILE_INTERVAL_S) -> None:
        self.interval_s = interval_s

    def wait(self, stop_event: threading.Event) -> bool:
        """Return ``True`` when the next cycle should run, ``False`` on stop."""
        return not stop_event.wait(self.interval_s)
