"""Usage Quota Tracker: fixed-window image/request accounting.

Two fixed windows are tracked per process:
  - unit window: 60s, limits image generation units per minute
  - request window: 24h, limits total remote calls per day

A text request consumes only the request window; an image request consumes
both. Expired windows are rolled over before the limit test, and the
check-and-increment runs under one asyncio.Lock with no await in between.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from app.gateway.types import (
    GenerationKind,
    QuotaDecision,
    QuotaReservation,
    UsageSnapshot,
)

logger = logging.getLogger(__name__)

MINUTE_SECONDS = 60.0
DAY_SECONDS = 24 * 60 * 60.0


@dataclass
class ClockWindow:
    """Fixed-duration counting window with roll-over."""

    duration: float  # seconds
    limit: int
    start: float = 0.0
    count: int = 0

    def is_current(self, now: float) -> bool:
        return now - self.start < self.duration

    def roll_over(self, now: float) -> bool:
        """Start a fresh window if this one has expired. Returns True if it rolled."""
        if self.is_current(now):
            return False
        self.start = now
        self.count = 0
        return True

    def used(self, now: float) -> int:
        """Count as seen at ``now`` without mutating (expired → 0)."""
        return self.count if self.is_current(now) else 0

    def reset_in_seconds(self, now: float) -> int:
        if not self.is_current(now):
            return math.ceil(self.duration)
        return max(0, math.ceil(self.duration - (now - self.start)))

    def would_exceed(self, amount: int) -> bool:
        return self.count + amount > self.limit


class QuotaTracker:
    """Per-process usage quota with a per-minute image window and a per-day request window.

    Usage:
        tracker = QuotaTracker(images_per_minute=20, requests_per_day=200)

        decision = await tracker.check_and_reserve(GenerationKind.IMAGE, cost=1)
        if not decision.allowed:
            # decision.snapshot tells the caller when each window resets
            ...
    """

    def __init__(
        self,
        images_per_minute: int = 20,
        requests_per_day: int = 200,
        clock: Callable[[], float] = time.time,
        state_file: str | Path | None = None,
    ):
        self._clock = clock
        now = clock()
        self._unit_window = ClockWindow(duration=MINUTE_SECONDS, limit=images_per_minute, start=now)
        self._request_window = ClockWindow(duration=DAY_SECONDS, limit=requests_per_day, start=now)
        self._lock = asyncio.Lock()
        self._state_file = Path(state_file) if state_file else None

        if self._state_file is not None:
            state = load_usage_state(self._state_file)
            if state:
                self.restore_state(state)

    # -- admission -----------------------------------------------------------

    async def check_and_reserve(self, kind: GenerationKind, cost: int = 1) -> QuotaDecision:
        """Admit or reject one request, charging the windows on admission."""
        async with self._lock:
            now = self._clock()
            # Roll over first: a request just past expiry sees an empty window
            if self._unit_window.roll_over(now):
                logger.debug("Image quota window rolled over")
            if self._request_window.roll_over(now):
                logger.debug("Daily request quota window rolled over")

            if self._request_window.would_exceed(1):
                logger.warning(
                    "Daily request limit reached (%d/%d)",
                    self._request_window.count,
                    self._request_window.limit,
                )
                return QuotaDecision(allowed=False, snapshot=self._snapshot(now))

            if kind == GenerationKind.IMAGE and self._unit_window.would_exceed(cost):
                logger.warning(
                    "Per-minute image limit reached (%d/%d)",
                    self._unit_window.count,
                    self._unit_window.limit,
                )
                return QuotaDecision(allowed=False, snapshot=self._snapshot(now))

            if kind == GenerationKind.IMAGE:
                self._unit_window.count += cost
            self._request_window.count += 1

            reservation = QuotaReservation(
                kind=kind,
                cost=cost if kind == GenerationKind.IMAGE else 0,
                unit_window_start=self._unit_window.start,
                request_window_start=self._request_window.start,
            )
            snapshot = self._snapshot(now)
            self._persist()

        return QuotaDecision(allowed=True, snapshot=snapshot, reservation=reservation)

    async def refund(self, reservation: QuotaReservation) -> None:
        """Give back a reservation's charge if its windows are still current."""
        async with self._lock:
            if reservation.cost and self._unit_window.start == reservation.unit_window_start:
                self._unit_window.count = max(0, self._unit_window.count - reservation.cost)
            if self._request_window.start == reservation.request_window_start:
                self._request_window.count = max(0, self._request_window.count - 1)
            self._persist()
        logger.info("Refunded %s quota reservation (cost=%d)", reservation.kind.value, reservation.cost)

    # -- inspection ----------------------------------------------------------

    def snapshot(self) -> UsageSnapshot:
        """Current usage. Side-effect free: expired windows read as empty."""
        return self._snapshot(self._clock())

    def _snapshot(self, now: float) -> UsageSnapshot:
        return UsageSnapshot(
            images_this_minute=self._unit_window.used(now),
            images_per_minute_limit=self._unit_window.limit,
            minute_reset_in_seconds=self._unit_window.reset_in_seconds(now),
            requests_today=self._request_window.used(now),
            requests_per_day_limit=self._request_window.limit,
            daily_reset_in_seconds=self._request_window.reset_in_seconds(now),
        )

    def get_stats(self) -> dict:
        snap = self.snapshot()
        return {
            "images_this_minute": snap.images_this_minute,
            "images_per_minute_limit": snap.images_per_minute_limit,
            "requests_today": snap.requests_today,
            "requests_per_day_limit": snap.requests_per_day_limit,
        }

    # -- persistence ---------------------------------------------------------

    def export_state(self) -> dict:
        return {
            "unit_window": {"start": self._unit_window.start, "count": self._unit_window.count},
            "request_window": {"start": self._request_window.start, "count": self._request_window.count},
        }

    def restore_state(self, state: dict) -> None:
        """Load window starts and counts exported by ``export_state``. Limits are not restored."""
        for name, window in (("unit_window", self._unit_window), ("request_window", self._request_window)):
            entry = state.get(name) or {}
            try:
                window.start = float(entry["start"])
                window.count = max(0, int(entry["count"]))
            except (KeyError, TypeError, ValueError):
                logger.warning("Ignoring malformed %s in saved usage state", name)

    def _persist(self) -> None:
        """Best-effort save: a failed write is logged and the in-memory counts stay authoritative."""
        if self._state_file is None:
            return
        try:
            save_usage_state(self._state_file, self.export_state())
        except OSError as e:
            logger.warning("Could not save usage state to %s: %s", self._state_file, e)


def load_usage_state(path: Path) -> dict:
    """Read saved usage windows. A missing or unreadable file yields an empty state."""
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Could not read usage state from %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def save_usage_state(path: Path, state: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as handle:
        json.dump(state, handle)
    tmp.replace(path)
