"""
Calibration engine: scores realtime and archive predictions against verified
ground truth and nudges the per-tier confidence multipliers.

Weekly flow:
    1. Ground truth for the window is handed in by the scheduler
    2. Each prediction tier is scored (TP/FP/FN, precision, recall, f1)
    3. Multipliers move one step toward the trailing f1 target
    4. The record is appended and the new weights go live
    5. Ground truth is reconciled so it supersedes matching predictions
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Sequence

from .adapters.base import FetchWindow
from .config import CalibrationConfig, ReconciliationConfig
from .errors import InsufficientCalibrationDataError
from .geo import cell_id
from .models import CalibrationRecord, Report, ReportTier, TierMetrics, utcnow
from .reconciliation import PREDICTION_TIERS, IngestResult, ReconciliationEngine, WeightBook
from .store import IntelligenceStore

logger = logging.getLogger(__name__)


def safe_ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


def f1_score(precision: float, recall: float) -> float:
    return safe_ratio(2 * precision * recall, precision + recall)


def area_key(latitude: float, longitude: float, cell_deg: float = 1.0) -> str:
    """Area id on a cell_deg grid, e.g. '35,-98' for 1 degree."""
    return cell_id(latitude, longitude, cell_deg)


@dataclass
class CalibrationRun:
    """Everything one calibration pass produced."""
    record: CalibrationRecord
    area_records: List[CalibrationRecord] = field(default_factory=list)
    ingest: Optional[IngestResult] = None
    applied: bool = True


class CalibrationEngine:
    """Weekly accuracy calibration against ground truth."""

    def __init__(self, store: IntelligenceStore, reconciliation: ReconciliationEngine,
                 config: Optional[CalibrationConfig] = None,
                 clock: Callable = utcnow):
        self.store = store
        self.reconciliation = reconciliation
        self.config = config or CalibrationConfig()
        self.clock = clock

    @property
    def weights(self) -> WeightBook:
        return self.reconciliation.weights

    @property
    def matching(self) -> ReconciliationConfig:
        return self.reconciliation.config

    # Matching

    def _corresponds(self, truth: Report, prediction: Report) -> bool:
        """Same location/time rule used to join reports into storm events."""
        buffer_deg = self.matching.match_buffer_deg
        grace = timedelta(hours=self.matching.match_grace_hours)
        return (abs(truth.latitude - prediction.latitude) <= buffer_deg and
                abs(truth.longitude - prediction.longitude) <= buffer_deg and
                abs(truth.timestamp - prediction.timestamp) <= grace)

    def _within_tolerance(self, truth: Report, prediction: Report) -> bool:
        delta = abs(truth.intensity_inches - prediction.intensity_inches)
        return delta <= self.config.intensity_tolerance_inches + 1e-9

    def predictions_for(self, tier: ReportTier, window: FetchWindow) -> List[Report]:
        """Tier predictions in the window, minus same-tier duplicates."""
        reports = self.store.list_reports(start=window.start, end=window.end, tiers=[tier])
        ids = {r.id for r in reports}
        return [r for r in reports if r.superseded_by not in ids]

    def score(self, ground_truth: Sequence[Report], predictions: Sequence[Report]) -> TierMetrics:
        tp = fn = 0
        errors = []
        for truth in ground_truth:
            candidates = [p for p in predictions if self._corresponds(truth, p)]
            if any(self._within_tolerance(truth, p) for p in candidates):
                tp += 1
            else:
                fn += 1
            if candidates:
                closest = min(candidates, key=lambda p: abs(p.intensity_inches - truth.intensity_inches))
                errors.append(abs(closest.intensity_inches - truth.intensity_inches))

        fp = sum(
            1 for p in predictions
            if not any(self._corresponds(truth, p) for truth in ground_truth)
        )

        precision = safe_ratio(tp, tp + fp)
        recall = safe_ratio(tp, tp + fn)
        return TierMetrics(
            true_positives=tp,
            false_positives=fp,
            false_negatives=fn,
            precision=precision,
            recall=recall,
            f1=f1_score(precision, recall),
            intensity_mae_inches=round(sum(errors) / len(errors), 4) if errors else None,
        )

    def reliability(self, ground_truth: Sequence[Report], predictions: Sequence[Report]) -> Optional[float]:
        """1 - mean gap between stated confidence and observed hit rate per 10-point bucket."""
        if not predictions:
            return None
        buckets: Dict[int, List[int]] = defaultdict(lambda: [0, 0])
        for prediction in predictions:
            bucket = int(prediction.confidence // 10) * 10
            buckets[bucket][0] += 1
            if any(self._corresponds(truth, prediction) for truth in ground_truth):
                buckets[bucket][1] += 1
        gaps = [abs(bucket / 100 - hits / total) for bucket, (total, hits) in buckets.items()]
        return round(1 - sum(gaps) / len(gaps), 4)

    # Weights

    def trailing_f1(self, tier: ReportTier, current_f1: float) -> float:
        """Average f1 over the trailing records, current one included."""
        history = [
            r for r in self.store.list_calibration_records(self.config.territory_id)
            if not r.skipped and tier in r.tier_metrics
        ]
        recent = [r.tier_metrics[tier].f1 for r in history[-(self.config.trailing_weeks - 1):]] \
            if self.config.trailing_weeks > 1 else []
        values = recent + [current_f1]
        return sum(values) / len(values)

    def adjust(self, weight: float, average_f1: float) -> float:
        cfg = self.config
        if average_f1 < cfg.target_f1:
            weight -= cfg.weight_step
        elif average_f1 > cfg.target_f1:
            weight += cfg.weight_step
        return round(min(max(weight, cfg.weight_floor), cfg.weight_ceiling), 4)

    # Runs

    def _period_id(self, window: FetchWindow) -> str:
        return f"{window.start.date().isoformat()}/{window.end.date().isoformat()}"

    def already_calibrated(self, period_id: str) -> Optional[CalibrationRecord]:
        """Applied record for this period or for the current calibration window.

        Restarts and manual polls re-run the weekly pass; weights step at most
        once per window.
        """
        latest = self.store.latest_calibration_record(self.config.territory_id)
        if latest is None:
            return None
        if latest.period_id == period_id:
            return latest
        if self.clock() - latest.applied_at < timedelta(days=self.config.window_days):
            return latest
        return None

    def _record(self, territory_id: str, period_id: str,
                metrics: Dict[ReportTier, TierMetrics],
                weights: Dict[ReportTier, float],
                reliability: Optional[float]) -> CalibrationRecord:
        tp = sum(m.true_positives for m in metrics.values())
        fp = sum(m.false_positives for m in metrics.values())
        fn = sum(m.false_negatives for m in metrics.values())
        precision = safe_ratio(tp, tp + fp)
        recall = safe_ratio(tp, tp + fn)
        return CalibrationRecord(
            period_id=period_id,
            territory_id=territory_id,
            true_positives=tp,
            false_positives=fp,
            false_negatives=fn,
            precision=precision,
            recall=recall,
            f1=f1_score(precision, recall),
            weights=dict(weights),
            tier_metrics=metrics,
            reliability=reliability,
            applied_at=self.clock(),
        )

    def run(self, window: FetchWindow, ground_truth: Sequence[Report]) -> CalibrationRun:
        """Calibrate one window. Raises InsufficientCalibrationDataError when skipped."""
        period_id = self._period_id(window)
        ground_truth = [r for r in ground_truth if r.ground_truth]

        if len(ground_truth) < self.config.min_ground_truth_samples:
            self.store.add_calibration_record(CalibrationRecord(
                period_id=period_id,
                territory_id=self.config.territory_id,
                weights=self.weights.snapshot(),
                skipped=True,
                applied_at=self.clock(),
            ))
            logger.warning(
                f"Calibration {period_id} skipped: {len(ground_truth)} ground truth reports"
            )
            raise InsufficientCalibrationDataError(
                period_id, len(ground_truth), self.config.min_ground_truth_samples)

        previous = self.already_calibrated(period_id)
        if previous is not None:
            logger.info(
                f"Calibration {period_id} skipped: weights already applied at "
                f"{previous.applied_at.isoformat()} ({previous.period_id})"
            )
            ingest = self.reconciliation.ingest(ground_truth)
            return CalibrationRun(record=previous, ingest=ingest, applied=False)

        predictions = {tier: self.predictions_for(tier, window) for tier in PREDICTION_TIERS}
        metrics = {tier: self.score(ground_truth, predictions[tier]) for tier in PREDICTION_TIERS}

        current = self.weights.snapshot()
        new_weights = {}
        for tier in PREDICTION_TIERS:
            average = self.trailing_f1(tier, metrics[tier].f1)
            new_weights[tier] = self.adjust(current.get(tier, 1.0), average)
            logger.info(
                f"Calibration {period_id} {tier.label}: f1={metrics[tier].f1:.3f} "
                f"trailing={average:.3f} weight {current.get(tier, 1.0):.2f} -> {new_weights[tier]:.2f}"
            )

        all_predictions = predictions[ReportTier.REALTIME] + predictions[ReportTier.ARCHIVE]
        record = self._record(
            self.config.territory_id, period_id, metrics, new_weights,
            self.reliability(ground_truth, all_predictions),
        )
        self.store.add_calibration_record(record)
        area_records = self._area_records(period_id, ground_truth, predictions, new_weights)

        self.weights.swap(new_weights)
        ingest = self.reconciliation.ingest(ground_truth)

        return CalibrationRun(record=record, area_records=area_records, ingest=ingest)

    def _area(self, report: Report) -> str:
        return area_key(report.latitude, report.longitude, self.config.area_cell_deg)

    def _area_records(self, period_id: str, ground_truth: Sequence[Report],
                      predictions: Dict[ReportTier, List[Report]],
                      weights: Dict[ReportTier, float]) -> List[CalibrationRecord]:
        areas = {self._area(r) for r in ground_truth}
        for tier_predictions in predictions.values():
            areas |= {self._area(r) for r in tier_predictions}

        records = []
        for key in sorted(areas):
            truths = [r for r in ground_truth if self._area(r) == key]
            metrics = {}
            scoped_all = []
            for tier, tier_predictions in predictions.items():
                scoped = [r for r in tier_predictions if self._area(r) == key]
                scoped_all.extend(scoped)
                metrics[tier] = self.score(truths, scoped)
            record = self._record(key, period_id, metrics, weights, self.reliability(truths, scoped_all))
            self.store.add_calibration_record(record)
            records.append(record)
        return records

    # Reporting

    def accuracy_trend(self, territory_id: Optional[str] = None) -> Dict:
        """Last four records against the four before them."""
        territory_id = territory_id or self.config.territory_id
        history = [r for r in self.store.list_calibration_records(territory_id) if not r.skipped]
        recent = history[-4:]
        older = history[-8:-4]
        recent_avg = sum(r.f1 for r in recent) / len(recent) if recent else 0.0
        older_avg = sum(r.f1 for r in older) / len(older) if older else 0.0

        if recent_avg > older_avg:
            trend = 'improving'
        elif recent_avg < older_avg:
            trend = 'declining'
        else:
            trend = 'stable'

        return {
            'territory_id': territory_id,
            'trend': trend,
            'recent_f1': round(recent_avg, 4),
            'previous_f1': round(older_avg, 4),
            'percent_change': round((recent_avg - older_avg) / older_avg * 100, 1) if older_avg else None,
            'records': len(history),
        }
