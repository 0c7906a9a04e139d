"""
Temporal smoothing of per-frame match decisions.

A match is only confirmed once the last `window_size` evaluated frames were
all matches. The window slides: a single miss blocks confirmation until it
has been pushed out by `window_size` further matches, but does not clear the
rest of the window.
"""

import logging
from collections import deque
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class TemporalSmoother:
    """
    FIFO window of the most recent per-frame match flags.

    Args:
        config: Optional dictionary (the "smoothing" config section) with:
            - window_size: Consecutive matches needed to confirm (default 3)
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        if config is None:
            config = {}
        self.window_size = int(config.get("window_size", 3))
        if self.window_size < 1:
            raise ValueError(f"window_size must be >= 1, got {self.window_size}")
        self._window = deque(maxlen=self.window_size)

    def add_frame(self, is_match: bool) -> bool:
        """
        Record one evaluated frame and report whether a match is confirmed.

        Returns:
            True when the window is full and every entry is a match.
        """
        self._window.append(bool(is_match))

        confirmed = len(self._window) == self.window_size and all(self._window)
        if confirmed:
            logger.debug(f"Match confirmed after {self.window_size} consecutive frames")
        return confirmed

    def reset(self) -> None:
        """Clear the window (session start/stop only)."""
        self._window.clear()

    @property
    def recent_matches(self) -> List[bool]:
        """Snapshot of the window, oldest first."""
        return list(self._window)

    def __len__(self) -> int:
        return len(self._window)
