"""
Tier scheduler.

Each enabled tier runs in its own asyncio task with its own lock, so a slow
or failing source never blocks the others. Only the network fetch runs on
the event loop; reconciliation, contours and calibration are handed to a
worker thread once the response is in hand.

Lane states: IDLE -> POLLING -> IDLE on success, POLLING -> BACKOFF -> IDLE on
failure, DEGRADED while the adapter's breaker is open, STOPPED after shutdown.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from .adapters.base import FetchWindow, SourceAdapter
from .config import SystemConfig
from .models import Report, ReportTier, utcnow

logger = logging.getLogger(__name__)


class TierState(Enum):
    """Scheduler lane states."""
    IDLE = "idle"
    POLLING = "polling"
    BACKOFF = "backoff"
    DEGRADED = "degraded"
    STOPPED = "stopped"


@dataclass
class PollResult:
    """Outcome of one poll of one tier."""
    tier: ReportTier
    success: bool
    windows: List[FetchWindow] = field(default_factory=list)
    report_count: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tier': self.tier.label,
            'success': self.success,
            'windows': [
                {'start': w.start.isoformat(), 'end': w.end.isoformat()} for w in self.windows
            ],
            'report_count': self.report_count,
            'error': self.error,
        }


@dataclass
class TierLane:
    """Runtime state of one tier."""
    tier: ReportTier
    adapter: SourceAdapter
    state: TierState = TierState.IDLE
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_attempt_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    polls: int = 0
    failures: int = 0
    archived_days: Set[date] = field(default_factory=set)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tier': self.tier.label,
            'state': self.state.value,
            'in_flight': self.lock.locked(),
            'last_attempt_at': self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            'last_success_at': self.last_success_at.isoformat() if self.last_success_at else None,
            'next_run_at': self.next_run_at.isoformat() if self.next_run_at else None,
            'last_error': self.last_error,
            'polls': self.polls,
            'failures': self.failures,
            'adapter': self.adapter.get_status(),
        }


ReportHandler = Callable[[ReportTier, FetchWindow, List[Report]], Any]
GroundTruthHandler = Callable[[FetchWindow, List[Report]], Any]


class Scheduler:
    """Drives the adapters on their cadences and hands results to the pipeline."""

    def __init__(self, adapters: Dict[ReportTier, SourceAdapter],
                 on_reports: ReportHandler,
                 on_ground_truth: GroundTruthHandler,
                 storms_active: Callable[[], bool],
                 config: Optional[SystemConfig] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.config = config or SystemConfig()
        self.on_reports = on_reports
        self.on_ground_truth = on_ground_truth
        self.storms_active = storms_active
        self.clock = clock

        enabled = {ReportTier.from_label(label) for label in self.config.scheduler.enabled_tiers}
        self.lanes: Dict[ReportTier, TierLane] = {
            tier: TierLane(tier=tier, adapter=adapter)
            for tier, adapter in adapters.items() if tier in enabled
        }
        for tier in adapters:
            if tier not in enabled:
                logger.info(f"[{tier.label}] tier disabled by configuration")

        self._tasks: Dict[ReportTier, asyncio.Task] = {}
        self._processing: Set[asyncio.Future] = set()
        self._stopping: Optional[asyncio.Event] = None

    # Cadence

    def realtime_interval(self) -> float:
        rt = self.config.realtime
        if self.storms_active():
            return rt.active_interval_seconds
        return rt.idle_interval_seconds

    def interval_for(self, tier: ReportTier) -> float:
        if tier == ReportTier.REALTIME:
            return self.realtime_interval()
        if tier == ReportTier.ARCHIVE:
            return timedelta(days=1).total_seconds()
        return timedelta(days=self.config.ground_truth.interval_days).total_seconds()

    def eligible_archive_days(self, now: Optional[datetime] = None,
                              archived: Optional[Set[date]] = None) -> List[date]:
        """Complete days not yet archived, oldest first.

        Day D is complete once now >= D + 2 days 00:00 UTC.
        """
        now = now or self.clock()
        archived = archived if archived is not None else set()
        midnight = datetime.combine(now.date(), dt_time.min, tzinfo=timezone.utc)
        newest = (midnight - timedelta(days=2)).date()
        lookback = max(self.config.archive.lookback_days, 1)
        days = [newest - timedelta(days=offset) for offset in range(lookback)]
        return sorted(d for d in days if d not in archived)

    def windows_for(self, lane: TierLane, now: datetime) -> List[FetchWindow]:
        if lane.tier == ReportTier.REALTIME:
            return [FetchWindow(now - timedelta(seconds=self.config.realtime.idle_interval_seconds), now)]
        if lane.tier == ReportTier.ARCHIVE:
            return [FetchWindow.for_day(d) for d in self.eligible_archive_days(now, lane.archived_days)]
        return [FetchWindow.trailing(now, timedelta(days=self.config.calibration.window_days))]

    # Polling

    async def _process(self, lane: TierLane, window: FetchWindow, reports: List[Report]):
        """Run CPU-bound handling in a worker thread; it finishes even if the poll is cancelled."""
        if lane.tier == ReportTier.GROUND_TRUTH:
            future = asyncio.ensure_future(asyncio.to_thread(self.on_ground_truth, window, reports))
        else:
            future = asyncio.ensure_future(asyncio.to_thread(self.on_reports, lane.tier, window, reports))
        self._processing.add(future)
        future.add_done_callback(self._processing.discard)
        return await asyncio.shield(future)

    async def poll(self, tier: ReportTier) -> PollResult:
        """Fetch and process one tier under its lock."""
        lane = self.lanes.get(tier)
        if lane is None:
            return PollResult(tier=tier, success=False, error=f"Tier {tier.label} is not enabled")

        async with lane.lock:
            now = self.clock()
            lane.state = TierState.POLLING
            lane.last_attempt_at = now
            lane.polls += 1
            result = PollResult(tier=tier, success=True)

            for window in self.windows_for(lane, now):
                response = await lane.adapter.fetch(window)
                if not response.success:
                    lane.failures += 1
                    lane.last_error = str(response.error)
                    lane.state = TierState.DEGRADED if lane.adapter.degraded else TierState.BACKOFF
                    result.success = False
                    result.error = lane.last_error
                    return result

                await self._process(lane, window, response.reports)
                result.windows.append(window)
                result.report_count += len(response.reports)
                if tier == ReportTier.ARCHIVE:
                    lane.archived_days.add(window.start.date())

            lane.state = TierState.IDLE
            lane.last_success_at = self.clock()
            lane.last_error = None
            return result

    async def run_cycle(self, tier: ReportTier) -> float:
        """One scheduled cycle. Returns seconds until the next one."""
        lane = self.lanes[tier]
        if lane.adapter.degraded:
            lane.state = TierState.DEGRADED
            return max(lane.adapter.circuit_breaker.remaining_cooldown(), 1.0)

        try:
            result = await self.poll(tier)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            lane.failures += 1
            lane.last_error = str(e)
            lane.state = TierState.BACKOFF
            logger.error(f"[{tier.label}] cycle failed: {e}", exc_info=True)
            return self.config.scheduler.failure_backoff_seconds

        if result.success:
            return self.interval_for(tier)
        if lane.state == TierState.DEGRADED:
            return max(lane.adapter.circuit_breaker.remaining_cooldown(), 1.0)
        return self.config.scheduler.failure_backoff_seconds

    async def _wait(self, seconds: float) -> bool:
        """Sleep until the delay passes or shutdown starts. True if stopping."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _run_lane(self, lane: TierLane):
        logger.info(f"[{lane.tier.label}] lane started")
        while not self._stopping.is_set():
            delay = await self.run_cycle(lane.tier)
            lane.next_run_at = self.clock() + timedelta(seconds=delay)
            if await self._wait(delay):
                break
            if lane.state == TierState.BACKOFF:
                lane.state = TierState.IDLE
        lane.state = TierState.STOPPED

    # Lifecycle

    def start(self):
        """Start one task per enabled tier."""
        if self._tasks:
            return
        self._stopping = asyncio.Event()
        for tier, lane in self.lanes.items():
            self._tasks[tier] = asyncio.create_task(self._run_lane(lane), name=f"hailfusion-{tier.label}")
        logger.info(f"Scheduler started with tiers: {', '.join(t.label for t in self.lanes)}")

    async def stop(self):
        """Stop all lanes within the grace period, then let processing finish."""
        if self._stopping is None:
            self._stopping = asyncio.Event()
        self._stopping.set()

        tasks = list(self._tasks.values())
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=self.config.scheduler.shutdown_grace_seconds)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"Cancelled {len(pending)} in-flight fetches at shutdown")
                await asyncio.gather(*pending, return_exceptions=True)

        if self._processing:
            await asyncio.gather(*list(self._processing), return_exceptions=True)

        for lane in self.lanes.values():
            lane.state = TierState.STOPPED
            await lane.adapter.close()
        self._tasks.clear()
        logger.info("Scheduler stopped")

    async def wait_stopped(self):
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    def status(self) -> Dict[str, Any]:
        return {tier.label: lane.to_dict() for tier, lane in self.lanes.items()}
