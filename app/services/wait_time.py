"""Wait-time estimation for the virtual waitlist."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from app.config import get_settings
from app.models.waitlist import QueueEntry


@dataclass
class WaitTimeConfig:
    """Waitlist settings from restaurant.config["waitlist"]."""

    average_table_turnover: int = 25  # minutes
    concurrent_tables: int = 1

    @classmethod
    def from_restaurant_config(cls, config: Optional[Dict[str, Any]]) -> "WaitTimeConfig":
        settings = get_settings()
        waitlist = (config or {}).get("waitlist") or {}
        return cls(
            average_table_turnover=int(
                waitlist.get("average_table_turnover", settings.default_average_table_turnover)
            ),
            concurrent_tables=int(
                waitlist.get("concurrent_tables", settings.default_concurrent_tables)
            ),
        )

    def to_config(self) -> Dict[str, int]:
        return {
            "average_table_turnover": self.average_table_turnover,
            "concurrent_tables": self.concurrent_tables,
        }


class WaitTimeEstimator:
    """
    Computes queue positions and estimated waits.

    estimate = ceil(parties_ahead * average_table_turnover / concurrent_tables)

    The head of the queue (nobody ahead) always waits 0 minutes.
    """

    def __init__(self, config: Optional[WaitTimeConfig] = None):
        self.config = config or WaitTimeConfig()

    def estimate(self, parties_ahead: int) -> int:
        """Estimated wait in minutes for a party with ``parties_ahead`` ahead of it."""
        if parties_ahead < 0:
            raise ValueError("parties_ahead cannot be negative")
        if self.config.average_table_turnover < 0:
            raise ValueError("average_table_turnover cannot be negative")
        if self.config.concurrent_tables < 1:
            raise ValueError("concurrent_tables must be at least 1")

        return math.ceil(
            parties_ahead * self.config.average_table_turnover / self.config.concurrent_tables
        )

    def recompute(self, waiting: Sequence[QueueEntry]) -> List[QueueEntry]:
        """
        Assign contiguous positions 1..N in FIFO order and refresh estimates.

        Args:
            waiting: The restaurant's waiting entries (any order)

        Returns:
            Entries whose position or estimate changed
        """
        ordered = sorted(waiting, key=lambda e: (e.joined_at, str(e.id)))

        changed = []
        for index, entry in enumerate(ordered):
            position = index + 1
            wait = self.estimate(index)
            if entry.position != position or entry.estimated_wait_minutes != wait:
                entry.position = position
                entry.estimated_wait_minutes = wait
                changed.append(entry)

        return changed
