"""
Hail intelligence service.

Wires adapters, engines, store and scheduler together in an explicit order
and exposes the read and control operations used by the CLI and callers.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .adapters import (
    ArchiveAdapter, DecodeServiceClient, FetchWindow, GroundTruthAdapter,
    RealtimeAdapter, SourceAdapter
)
from .calibration import CalibrationEngine, CalibrationRun
from .config import SystemConfig
from .contours import ContourGenerator
from .errors import InsufficientCalibrationDataError
from .models import BoundingBox, CalibrationRecord, EventStatus, Report, ReportTier, utcnow
from .reconciliation import AlertDispatcher, IngestResult, ReconciliationEngine, WeightBook
from .scheduler import PollResult, Scheduler
from .store import IntelligenceStore, create_store
from .territory import TerritoryProjector

logger = logging.getLogger(__name__)


def build_adapters(config: SystemConfig) -> Dict[ReportTier, SourceAdapter]:
    """Construct the three tier adapters from configuration."""
    decode_client = DecodeServiceClient(config.decode)
    return {
        ReportTier.REALTIME: RealtimeAdapter(decode_client, config.realtime, config.retry),
        ReportTier.ARCHIVE: ArchiveAdapter(
            decode_client, config.archive, config.retry, area=config.realtime.service_area),
        ReportTier.GROUND_TRUTH: GroundTruthAdapter(config.ground_truth, config.retry),
    }


class HailIntelligenceService:
    """Owns the pipeline: fetch, reconcile, contour, project, calibrate."""

    def __init__(self, config: SystemConfig, store: IntelligenceStore,
                 adapters: Dict[ReportTier, SourceAdapter],
                 dispatcher: Optional[AlertDispatcher] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.config = config
        self.store = store
        self.clock = clock
        self.service_area = config.realtime.service_area

        self.weights = WeightBook()
        self._restore_weights()

        self.reconciliation = ReconciliationEngine(
            store, config.reconciliation, self.service_area, self.weights, dispatcher, clock)
        self.contours = ContourGenerator(store, config.contours, clock)
        self.calibration = CalibrationEngine(store, self.reconciliation, config.calibration, clock)
        self.territory = TerritoryProjector(store, config.territory, clock)

        self.scheduler = Scheduler(
            adapters,
            on_reports=self.process_reports,
            on_ground_truth=self.process_ground_truth,
            storms_active=self.storms_active,
            config=config,
            clock=clock,
        )

    @classmethod
    def build(cls, config: SystemConfig, store: Optional[IntelligenceStore] = None,
              dispatcher: Optional[AlertDispatcher] = None) -> "HailIntelligenceService":
        """Startup order: store, adapters, engines, scheduler."""
        store = store or create_store(config.store.backend, config.store.sqlite_path)
        adapters = build_adapters(config)
        return cls(config, store, adapters, dispatcher)

    def _restore_weights(self):
        latest = self.store.latest_calibration_record(self.config.calibration.territory_id)
        if latest is not None and latest.weights:
            self.weights.swap(latest.weights)

    # Pipeline (worker thread)

    def _after_ingest(self, result: IngestResult) -> None:
        self.contours.regenerate(result.events_touched)
        touched = list(result.added) + self.store.get_reports(result.superseded_ids)
        self.territory.refresh_for(touched)

    def process_reports(self, tier: ReportTier, window: FetchWindow,
                        reports: List[Report]) -> IngestResult:
        result = self.reconciliation.ingest(reports)
        self._after_ingest(result)
        self.reconciliation.close_inactive()
        logger.debug(f"[{tier.label}] processed window {window.start} to {window.end}: {result.to_dict()}")
        return result

    def process_ground_truth(self, window: FetchWindow,
                             reports: List[Report]) -> Optional[CalibrationRun]:
        try:
            run = self.calibration.run(window, reports)
            ingest = run.ingest
        except InsufficientCalibrationDataError as e:
            logger.warning(f"Calibration skipped, previous weights kept: {e}")
            run = None
            ingest = self.reconciliation.ingest(reports)
        self._after_ingest(ingest)
        return run

    def storms_active(self) -> bool:
        return self.reconciliation.has_active_events(self.service_area)

    # Lifecycle

    async def start(self):
        self.scheduler.start()

    async def stop(self):
        await self.scheduler.stop()

    async def run_forever(self):
        """Run the scheduler until cancelled, then shut down cleanly."""
        await self.start()
        try:
            await self.scheduler.wait_stopped()
        finally:
            await self.stop()

    async def close(self):
        for lane in self.scheduler.lanes.values():
            await lane.adapter.close()

    # Exposed operations

    def query(self, bbox: BoundingBox,
              time_range: Optional[Tuple[Optional[datetime], Optional[datetime]]] = None) -> Dict[str, List[Dict]]:
        """Storm events overlapping the box and time range, with their latest contours."""
        start, end = time_range or (None, None)
        start = start or datetime.min.replace(tzinfo=timezone.utc)
        end = end or datetime.max.replace(tzinfo=timezone.utc)

        events = [e for e in self.store.list_events() if e.overlaps(bbox, start, end)]
        contours = []
        for event in events:
            contour_set = self.store.latest_contour_set(event.id)
            if contour_set is not None:
                contours.append(contour_set.to_dict())
        return {
            'events': [e.to_dict() for e in events],
            'contours': contours,
        }

    def get_accuracy_report(self, territory_id: Optional[str] = None) -> Optional[CalibrationRecord]:
        return self.store.latest_calibration_record(territory_id or self.config.calibration.territory_id)

    async def trigger_manual_poll(self, tier: Union[ReportTier, str]) -> PollResult:
        """Out-of-cycle poll; waits for any in-flight poll of the same tier."""
        if not isinstance(tier, ReportTier):
            tier = ReportTier.from_label(tier)
        logger.info(f"[{tier.label}] manual poll requested")
        return await self.scheduler.poll(tier)

    def staleness(self, now: Optional[datetime] = None) -> Dict[str, Dict[str, Any]]:
        """Per-tier freshness against its SLA; only raised while storms are active."""
        now = now or self.clock()
        slas = {
            ReportTier.REALTIME: timedelta(seconds=self.config.realtime.freshness_sla_seconds),
            ReportTier.ARCHIVE: timedelta(hours=self.config.archive.freshness_sla_hours),
            ReportTier.GROUND_TRUTH: timedelta(days=self.config.ground_truth.freshness_sla_days),
        }
        active = self.storms_active()
        report = {}
        for tier, lane in self.scheduler.lanes.items():
            sla = slas[tier]
            last = lane.last_success_at
            age = (now - last).total_seconds() if last else None
            overdue = last is None or now - last > sla
            report[tier.label] = {
                'last_success_at': last.isoformat() if last else None,
                'age_seconds': age,
                'sla_seconds': sla.total_seconds(),
                'stale': active and overdue,
            }
        return report

    def accuracy_dashboard(self) -> Dict[str, Any]:
        territory_id = self.config.calibration.territory_id
        latest = self.get_accuracy_report(territory_id)

        areas: Dict[str, CalibrationRecord] = {}
        for record in self.store.list_calibration_records():
            if record.territory_id != territory_id and not record.skipped:
                areas[record.territory_id] = record

        return {
            'current': latest.to_dict() if latest else None,
            'trend': self.calibration.accuracy_trend(territory_id),
            'weights': {t.label: w for t, w in self.weights.snapshot().items()},
            'areas': {
                key: {'precision': r.precision, 'recall': r.recall, 'f1': r.f1,
                      'true_positives': r.true_positives}
                for key, r in sorted(areas.items())
            },
        }

    def territory_heat_map(self, bbox: Optional[BoundingBox] = None) -> List[Dict[str, Any]]:
        return self.territory.heat_map(bbox)

    def system_status(self) -> Dict[str, Any]:
        active_events = self.store.list_events(EventStatus.ACTIVE)
        return {
            'status': 'degraded' if any(l.adapter.degraded for l in self.scheduler.lanes.values()) else 'healthy',
            'timestamp': self.clock().isoformat(),
            'version': self.config.version,
            'environment': self.config.environment,
            'storms_active': self.storms_active(),
            'active_events': len(active_events),
            'events_needing_reprocessing': [
                e.id for e in self.store.list_events() if e.needs_reprocessing
            ],
            'weights': {t.label: w for t, w in self.weights.snapshot().items()},
            'tiers': self.scheduler.status(),
            'staleness': self.staleness(),
        }


def run_service(config: SystemConfig) -> None:
    """Blocking entry point used by the CLI `run` command."""
    service = HailIntelligenceService.build(config)
    try:
        asyncio.run(service.run_forever())
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
