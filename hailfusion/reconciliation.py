"""
Reconciliation engine: clusters incoming reports into storm events,
supersedes duplicate observations by trust tier, assigns confidence and
raises alerts for significant hail inside the service area.
"""

import logging
import math
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set

from .config import ReconciliationConfig
from .errors import ReconciliationError
from .geo import KM_PER_DEGREE_LAT, distance_m, report_distance_m, seconds_apart
from .models import BoundingBox, EventStatus, Report, ReportTier, StormEvent, utcnow
from .store import IntelligenceStore

logger = logging.getLogger(__name__)

PREDICTION_TIERS = (ReportTier.REALTIME, ReportTier.ARCHIVE)


class WeightBook:
    """Live per-tier confidence multipliers, swapped whole by calibration."""

    def __init__(self, weights: Optional[Dict[ReportTier, float]] = None):
        self._lock = threading.Lock()
        self._weights = {tier: 1.0 for tier in PREDICTION_TIERS}
        if weights:
            self._weights.update(weights)

    def get(self, tier: ReportTier) -> float:
        if tier == ReportTier.GROUND_TRUTH:
            return 1.0
        with self._lock:
            return self._weights.get(tier, 1.0)

    def snapshot(self) -> Dict[ReportTier, float]:
        with self._lock:
            return dict(self._weights)

    def swap(self, weights: Dict[ReportTier, float]) -> None:
        new_weights = {
            tier: weight for tier, weight in weights.items()
            if tier in PREDICTION_TIERS
        }
        with self._lock:
            self._weights = {**self._weights, **new_weights}
        logger.info(
            "Confidence weights updated: " +
            ", ".join(f"{t.label}={w:.2f}" for t, w in sorted(new_weights.items()))
        )


class AlertDispatcher(ABC):
    """Receives significant hail inside the service area."""

    @abstractmethod
    def notify(self, event: StormEvent, report: Report) -> None:
        pass


class LoggingAlertDispatcher(AlertDispatcher):
    """Default dispatcher: writes alerts to the log."""

    def notify(self, event: StormEvent, report: Report) -> None:
        logger.warning(
            f"ALERT: {report.intensity_inches:.2f} in hail at "
            f"({report.latitude:.4f}, {report.longitude:.4f}) "
            f"event={event.id} tier={report.source_tier.label} "
            f"confidence={report.confidence:.0f}"
        )


@dataclass
class IngestResult:
    """Outcome of one ingest pass."""
    added: List[Report] = field(default_factory=list)
    ignored: int = 0
    superseded_ids: List[str] = field(default_factory=list)
    events_touched: Set[str] = field(default_factory=set)
    events_created: Set[str] = field(default_factory=set)
    alerts_sent: int = 0
    failed: List[str] = field(default_factory=list)

    def merge(self, other: "IngestResult") -> None:
        self.added.extend(other.added)
        self.ignored += other.ignored
        self.superseded_ids.extend(other.superseded_ids)
        self.events_touched |= other.events_touched
        self.events_created |= other.events_created
        self.alerts_sent += other.alerts_sent
        self.failed.extend(other.failed)

    def to_dict(self) -> Dict:
        return {
            'added': len(self.added),
            'ignored': self.ignored,
            'superseded': len(self.superseded_ids),
            'events_touched': sorted(self.events_touched),
            'events_created': sorted(self.events_created),
            'alerts_sent': self.alerts_sent,
            'failed': list(self.failed),
        }


class ReconciliationEngine:
    """Merges reports from every tier into storm events."""

    def __init__(self, store: IntelligenceStore,
                 config: Optional[ReconciliationConfig] = None,
                 service_area: Optional[BoundingBox] = None,
                 weights: Optional[WeightBook] = None,
                 dispatcher: Optional[AlertDispatcher] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.config = config or ReconciliationConfig()
        self.service_area = service_area
        self.weights = weights or WeightBook()
        self.dispatcher = dispatcher or LoggingAlertDispatcher()
        self.clock = clock
        self._matching_lock = threading.Lock()

    # Confidence

    def base_confidence(self, report: Report) -> float:
        cfg = self.config
        if report.source_tier == ReportTier.GROUND_TRUTH:
            return 100.0
        if report.source_tier == ReportTier.REALTIME:
            span = cfg.realtime_scale_max_inches - cfg.realtime_scale_min_inches
            fraction = (report.intensity_inches - cfg.realtime_scale_min_inches) / span if span > 0 else 1.0
            fraction = min(max(fraction, 0.0), 1.0)
            return cfg.realtime_min_confidence + fraction * (
                cfg.realtime_max_confidence - cfg.realtime_min_confidence)
        corroborating = self.count_corroborating(report)
        return min(cfg.archive_base_confidence + cfg.archive_corroboration_bonus * corroborating,
                   cfg.archive_max_confidence)

    def count_corroborating(self, report: Report) -> int:
        """Other live reports within the corroboration radius and window."""
        cfg = self.config
        window = timedelta(minutes=cfg.corroboration_window_minutes)
        radius_m = cfg.corroboration_radius_km * 1000
        lat_deg = cfg.corroboration_radius_km / KM_PER_DEGREE_LAT
        lon_deg = lat_deg / max(math.cos(math.radians(report.latitude)), 0.01)
        bbox = BoundingBox(report.latitude - lat_deg, report.latitude + lat_deg,
                           report.longitude - lon_deg, report.longitude + lon_deg)
        nearby = self.store.list_reports(
            start=report.timestamp - window,
            end=report.timestamp + window,
            bbox=bbox,
            include_superseded=False,
        )
        return sum(
            1 for other in nearby
            if other.id != report.id and report_distance_m(report, other) <= radius_m
        )

    def score(self, report: Report) -> float:
        if report.source_tier == ReportTier.GROUND_TRUTH:
            return 100.0
        weighted = self.base_confidence(report) * self.weights.get(report.source_tier)
        return min(max(weighted, 0.0), 100.0)

    # Matching

    def _matches(self, event: StormEvent, report: Report) -> bool:
        if report.source_tier == ReportTier.REALTIME and not event.is_active:
            return False
        grace = timedelta(hours=self.config.match_grace_hours)
        if not (event.earliest_report_at - grace <= report.timestamp <= event.latest_report_at + grace):
            return False
        return event.envelope.expanded(self.config.match_buffer_deg).contains(
            report.latitude, report.longitude)

    def find_duplicate(self, report: Report) -> Optional[Report]:
        """Closest stored live report that is the same observation, in any event."""
        cfg = self.config
        window = timedelta(minutes=cfg.dedupe_window_minutes)
        lat_deg = cfg.dedupe_distance_m / 1000 / KM_PER_DEGREE_LAT
        lon_deg = lat_deg / max(math.cos(math.radians(report.latitude)), 0.01)
        nearby = self.store.list_reports(
            start=report.timestamp - window,
            end=report.timestamp + window,
            bbox=BoundingBox(report.latitude - lat_deg, report.latitude + lat_deg,
                             report.longitude - lon_deg, report.longitude + lon_deg),
            include_superseded=False,
        )
        duplicates = [
            r for r in nearby
            if r.id != report.id and r.event_id and self._is_duplicate(report, r)
        ]
        if not duplicates:
            return None
        return min(duplicates, key=lambda r: report_distance_m(report, r))

    def find_matching_event(self, report: Report) -> Optional[StormEvent]:
        """The event holding a duplicate of the report, else the closest matching centre."""
        duplicate = self.find_duplicate(report)
        if duplicate is not None:
            event = self.store.get_event(duplicate.event_id)
            if event is not None:
                return event

        candidates = [e for e in self.store.list_events() if self._matches(e, report)]
        if not candidates:
            return None

        def centre_distance(event: StormEvent) -> float:
            lat, lon = event.envelope.center()
            return distance_m(lat, lon, report.latitude, report.longitude)

        return min(candidates, key=centre_distance)

    def _match_or_create(self, report: Report, result: IngestResult) -> StormEvent:
        with self._matching_lock:
            event = self.find_matching_event(report)
            if event is None:
                event = StormEvent.start(report)
                self.store.put_event(event)
                result.events_created.add(event.id)
                logger.info(
                    f"Created storm event {event.id} at "
                    f"({report.latitude:.4f}, {report.longitude:.4f})"
                )
            return event

    # Deduplication

    def _is_duplicate(self, a: Report, b: Report) -> bool:
        window = self.config.dedupe_window_minutes * 60
        return (seconds_apart(a, b) < window and
                report_distance_m(a, b) < self.config.dedupe_distance_m)

    @staticmethod
    def _pick_winner(incoming: Report, duplicates: List[Report]) -> Report:
        """Highest tier, then highest intensity; incumbents win ties."""
        winner = incoming
        for candidate in duplicates:
            rank = (candidate.source_tier, candidate.intensity_mm)
            best = (winner.source_tier, winner.intensity_mm)
            if rank > best or (rank == best and winner is incoming):
                winner = candidate
        return winner

    # Ingest

    def ingest(self, reports: Iterable[Report]) -> IngestResult:
        """Reconcile a batch; one event's failure does not stop the rest."""
        result = IngestResult()
        for report in reports:
            try:
                self._ingest_one(report, result)
            except ReconciliationError as e:
                result.failed.append(report.id)
                logger.error(f"Reconciliation failed for {report.id}: {e}", exc_info=True)
                self._flag_for_reprocessing(e.event_id)
        if result.added:
            logger.info(
                f"Reconciled {len(result.added)} reports "
                f"({result.ignored} ignored, {len(result.superseded_ids)} superseded, "
                f"{len(result.events_touched)} events)"
            )
        return result

    def _flag_for_reprocessing(self, event_id: Optional[str]) -> None:
        if not event_id:
            return
        with self.store.event_transaction(event_id):
            event = self.store.get_event(event_id)
            if event is not None and not event.needs_reprocessing:
                event.needs_reprocessing = True
                self.store.put_event(event)

    def _ingest_one(self, report: Report, result: IngestResult) -> None:
        if self.store.get_report(report.id) is not None:
            result.ignored += 1
            return

        event = self._match_or_create(report, result)
        try:
            alert_event = self._apply_to_event(event.id, report, result)
        except ReconciliationError:
            raise
        except Exception as e:
            raise ReconciliationError(str(e), event_id=event.id) from e

        if alert_event is not None:
            self._maybe_alert(alert_event, report, result)

    def _apply_to_event(self, event_id: str, report: Report,
                        result: IngestResult) -> Optional[StormEvent]:
        with self.store.event_transaction(event_id):
            event = self.store.get_event(event_id)
            if event is None:
                raise ReconciliationError(f"Storm event {event_id} vanished", event_id=event_id)

            report.event_id = event.id
            report.ingested_at = self.clock()
            report.superseded_by = None
            report.confidence = self.score(report)

            members = self.store.get_reports(event.report_ids)
            duplicates = [
                r for r in members
                if r.is_active and r.id != report.id and self._is_duplicate(report, r)
            ]
            winner = self._pick_winner(report, duplicates)
            if winner is not report:
                report.superseded_by = winner.id
            losers = [r for r in duplicates if r is not winner]

            if not self.store.add_report(report):
                result.ignored += 1
                return None
            result.added.append(report)

            for loser in losers:
                self.store.mark_superseded(loser.id, winner.id)
                result.superseded_ids.append(loser.id)
                logger.debug(f"{loser.id} superseded by {winner.id}")
            if report.superseded_by:
                result.superseded_ids.append(report.id)

            event.absorb(report)
            event.report_ids.append(report.id)
            superseded = {r.id for r in losers}
            live = [r for r in members if r.is_active and r.id not in superseded]
            if report.is_active:
                live.append(report)
            event.max_intensity_mm = max((r.intensity_mm for r in live), default=0.0)
            self.store.put_event(event)
            result.events_touched.add(event.id)

            return event if report.is_active else None

    def _maybe_alert(self, event: StormEvent, report: Report, result: IngestResult) -> None:
        if self.service_area is None or report.intensity_mm < self.config.alert_threshold_mm:
            return
        if not self.service_area.contains(report.latitude, report.longitude):
            return
        try:
            self.dispatcher.notify(event, report)
            result.alerts_sent += 1
        except Exception as e:
            logger.error(f"Alert dispatcher failed for {report.id}: {e}", exc_info=True)

    # Lifecycle

    def close_inactive(self, now: Optional[datetime] = None) -> List[str]:
        """Close active events with no report inside the inactivity window."""
        now = now or self.clock()
        cutoff = now - timedelta(hours=self.config.inactivity_hours)
        closed = []
        for candidate in self.store.list_events(EventStatus.ACTIVE):
            if candidate.latest_report_at >= cutoff:
                continue
            with self.store.event_transaction(candidate.id):
                event = self.store.get_event(candidate.id)
                if event is None or not event.is_active or event.latest_report_at >= cutoff:
                    continue
                event.status = EventStatus.CLOSED
                event.closed_at = now
                self.store.put_event(event)
                closed.append(event.id)
        if closed:
            logger.info(f"Closed {len(closed)} inactive storm events")
        return closed

    def has_active_events(self, bbox: BoundingBox) -> bool:
        return any(e.envelope.intersects(bbox) for e in self.store.list_events(EventStatus.ACTIVE))
