"""
Packet and byte counters for both directions, displayed on a timer.

Interval counters are folded into lifetime totals and reset on every display;
the totals never reset. Rates are human-scaled for display only.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

from udp_redirect.logging_utils import get_logger

logger = get_logger("udp_redirect")

STATISTICS_DELAY_SECONDS = 60

HUMAN_READABLE_SIZES = (" ", "K", "M", "G", "T", "P", "E")

SIDES = ("listen", "connect")
OPERATIONS = ("receive", "send")

COUNTER_NAMES = tuple(
    f"{side}_{unit}_{op}" for side in SIDES for op in OPERATIONS for unit in ("packet", "byte")
)

DROP_NAMES = ("drop_listen_source", "drop_connect_source", "drop_unpinned")


def human_readable(value: float) -> Tuple[float, str]:
    """Scale `value` down by 1000 until it fits, returning (value, suffix)."""
    count = 0
    while value > 1000 and count < len(HUMAN_READABLE_SIZES) - 1:
        value = value / 1000
        count += 1
    return value, HUMAN_READABLE_SIZES[count]


def format_human(value: float) -> str:
    scaled, suffix = human_readable(float(value))
    return f"{scaled:.1f}{suffix}".rstrip()


class RedirectStatistics:
    """Per-interval and lifetime counters for the redirector."""

    def __init__(self, interval_s: float = STATISTICS_DELAY_SECONDS) -> None:
        self.interval_s = float(interval_s)
        self.counts: Dict[str, int] = dict.fromkeys(COUNTER_NAMES, 0)
        self.totals: Dict[str, int] = dict.fromkeys(COUNTER_NAMES, 0)
        self.drops: Dict[str, int] = dict.fromkeys(DROP_NAMES, 0)
        self.time_display_first: Optional[float] = None
        self.time_display_last: Optional[float] = None

    def start(self, now: float) -> None:
        self.time_display_first = now
        self.time_display_last = now

    def record_receive(self, side: str, nbytes: int) -> None:
        self.counts[f"{side}_packet_receive"] += 1
        self.counts[f"{side}_byte_receive"] += nbytes

    def record_send(self, side: str, nbytes: int) -> None:
        self.counts[f"{side}_packet_send"] += 1
        self.counts[f"{side}_byte_send"] += nbytes

    def record_drop(self, name: str) -> None:
        self.drops[name] += 1

    def seconds_until_display(self, now: float) -> float:
        # Not started yet: a full interval remains.
        if self.time_display_last is None:
            return self.interval_s
        return max(0.0, self.time_display_last + self.interval_s - now)

    def display_due(self, now: float) -> bool:
        return self.seconds_until_display(now) <= 0.0

    def _emit(self, window: str, counters: Dict[str, int], elapsed: int, log: logging.Logger) -> None:
        for side in SIDES:
            for op in OPERATIONS:
                packets = counters[f"{side}_packet_{op}"]
                nbytes = counters[f"{side}_byte_{op}"]
                log.info(
                    f"{side}:{op}:packets: {format_human(packets)} ({format_human(packets / elapsed)}/s), "
                    f"{side}:{op}:bytes: {format_human(nbytes)} ({format_human(nbytes / elapsed)}/s)",
                    extra={"window": window, "elapsed_s": elapsed},
                )

    def display(self, now: float, log: Optional[logging.Logger] = None) -> Dict[str, Dict[str, int]]:
        """Fold, log and reset the interval counters.

        Returns the interval snapshot and the updated totals.
        """
        log = log or logger
        if self.time_display_last is None:
            self.start(now)

        elapsed = max(1, int(now - self.time_display_last))
        elapsed_total = max(1, int(now - self.time_display_first))

        for name in COUNTER_NAMES:
            self.totals[name] += self.counts[name]
        snapshot = dict(self.counts)

        log.info(f"---- STATS {int(self.interval_s)}s ----")
        self._emit("interval", snapshot, elapsed, log)
        log.info("---- STATS TOTAL ----")
        self._emit("total", self.totals, elapsed_total, log)
        if any(self.drops.values()):
            log.info("Dropped packets", extra=dict(self.drops))

        self.counts = dict.fromkeys(COUNTER_NAMES, 0)
        self.time_display_last = now
        return {"interval": snapshot, "total": dict(self.totals)}

    def to_dict(self) -> Dict[str, int]:
        payload: Dict[str, int] = {}
        for name in COUNTER_NAMES:
            payload[name] = self.counts[name]
            payload[f"{name}_total"] = self.totals[name] + self.counts[name]
        payload.update(self.drops)
        return payload
