"""
Core data models for the hail intelligence core.

Reports are the unit of observation; storm events cluster them; contour sets,
calibration records and territory aggregates are derived views that the
intelligence store keeps alongside them.
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple

from shapely.geometry import mapping, shape
from shapely.geometry.base import BaseGeometry

MM_PER_INCH = 25.4


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO string, epoch seconds or datetime into aware UTC."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        return ensure_utc(datetime.fromisoformat(text))
    raise ValueError(f"Unsupported timestamp value: {value!r}")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return parse_timestamp(value) if value else None


class ReportTier(IntEnum):
    """Observation sources, valued by trust rank (3 highest)."""
    REALTIME = 1
    ARCHIVE = 2
    GROUND_TRUTH = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_label(cls, label: str) -> "ReportTier":
        """Resolve 'realtime', 'archive', 'ground_truth' or '1'..'3'."""
        text = str(label).strip().lower().replace('-', '_')
        if text.isdigit():
            return cls(int(text))
        for tier in cls:
            if tier.label == text:
                return tier
        raise ValueError(f"Unknown tier: {label}")


class EventStatus(Enum):
    """Storm event lifecycle states."""
    ACTIVE = "active"
    CLOSED = "closed"


def make_report_id(tier: ReportTier, latitude: float, longitude: float,
                   timestamp: datetime, intensity_mm: float) -> str:
    """Deterministic report id so re-ingesting a batch is a no-op."""
    key = (
        f"{int(tier)}|{latitude:.5f}|{longitude:.5f}|"
        f"{ensure_utc(timestamp).isoformat()}|{intensity_mm:.2f}"
    )
    digest = hashlib.sha1(key.encode('utf-8')).hexdigest()[:20]
    return f"{tier.label}_{digest}"


@dataclass
class BoundingBox:
    """Geographic bounds in decimal degrees."""
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    @classmethod
    def around(cls, lat: float, lon: float) -> "BoundingBox":
        """Zero-area box at a single point."""
        return cls(lat, lat, lon, lon)

    @classmethod
    def from_string(cls, text: str) -> "BoundingBox":
        """Parse 'south,west,north,east'."""
        south, west, north, east = (float(part) for part in text.split(','))
        return cls(min_lat=south, max_lat=north, min_lon=west, max_lon=east)

    def contains(self, lat: float, lon: float) -> bool:
        """Check if coordinates are within bounds."""
        return (self.min_lat <= lat <= self.max_lat and
                self.min_lon <= lon <= self.max_lon)

    def center(self) -> Tuple[float, float]:
        """Get center point of bounds."""
        return ((self.min_lat + self.max_lat) / 2,
                (self.min_lon + self.max_lon) / 2)

    def expanded(self, buffer_deg: float) -> "BoundingBox":
        return BoundingBox(
            self.min_lat - buffer_deg, self.max_lat + buffer_deg,
            self.min_lon - buffer_deg, self.max_lon + buffer_deg
        )

    def include(self, lat: float, lon: float) -> "BoundingBox":
        """Smallest box covering this one and the point."""
        return BoundingBox(
            min(self.min_lat, lat), max(self.max_lat, lat),
            min(self.min_lon, lon), max(self.max_lon, lon)
        )

    def intersects(self, other: "BoundingBox") -> bool:
        return not (other.min_lat > self.max_lat or other.max_lat < self.min_lat or
                    other.min_lon > self.max_lon or other.max_lon < self.min_lon)

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BoundingBox":
        return cls(
            min_lat=float(data['min_lat']), max_lat=float(data['max_lat']),
            min_lon=float(data['min_lon']), max_lon=float(data['max_lon'])
        )


@dataclass
class Report:
    """A single normalized intensity observation."""
    id: str
    source_tier: ReportTier
    latitude: float
    longitude: float
    intensity_mm: float
    timestamp: datetime
    confidence: float = 0.0
    ground_truth: bool = False
    superseded_by: Optional[str] = None
    event_id: Optional[str] = None
    source_ref: Optional[str] = None
    ingested_at: Optional[datetime] = None

    def __post_init__(self):
        self.source_tier = ReportTier(self.source_tier)
        self.timestamp = ensure_utc(self.timestamp)
        if self.ground_truth:
            self.confidence = 100.0

    @classmethod
    def create(cls, tier: ReportTier, latitude: float, longitude: float,
               intensity_mm: float, timestamp: datetime,
               source_ref: Optional[str] = None,
               ground_truth: bool = False) -> "Report":
        """Build a report with its deterministic id."""
        timestamp = ensure_utc(timestamp)
        return cls(
            id=make_report_id(tier, latitude, longitude, timestamp, intensity_mm),
            source_tier=tier,
            latitude=latitude,
            longitude=longitude,
            intensity_mm=intensity_mm,
            timestamp=timestamp,
            confidence=100.0 if ground_truth else 0.0,
            ground_truth=ground_truth,
            source_ref=source_ref,
        )

    @property
    def intensity_inches(self) -> float:
        # Rounded so exact band cutoffs survive the mm round trip
        return round(self.intensity_mm / MM_PER_INCH, 6)

    @property
    def is_active(self) -> bool:
        return self.superseded_by is None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        result = asdict(self)
        result['source_tier'] = int(self.source_tier)
        result['timestamp'] = self.timestamp.isoformat()
        result['ingested_at'] = _iso(self.ingested_at)
        result['intensity_inches'] = round(self.intensity_inches, 3)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Report":
        return cls(
            id=data['id'],
            source_tier=ReportTier(int(data['source_tier'])),
            latitude=float(data['latitude']),
            longitude=float(data['longitude']),
            intensity_mm=float(data['intensity_mm']),
            timestamp=parse_timestamp(data['timestamp']),
            confidence=float(data.get('confidence', 0.0)),
            ground_truth=bool(data.get('ground_truth', False)),
            superseded_by=data.get('superseded_by'),
            event_id=data.get('event_id'),
            source_ref=data.get('source_ref'),
            ingested_at=_from_iso(data.get('ingested_at')),
        )


@dataclass
class StormEvent:
    """Spatiotemporal cluster of reports believed to come from one storm."""
    id: str
    envelope: BoundingBox
    earliest_report_at: datetime
    latest_report_at: datetime
    status: EventStatus = EventStatus.ACTIVE
    report_ids: List[str] = field(default_factory=list)
    max_intensity_mm: float = 0.0
    needs_reprocessing: bool = False
    created_at: datetime = field(default_factory=utcnow)
    closed_at: Optional[datetime] = None

    @classmethod
    def start(cls, report: Report) -> "StormEvent":
        """Open a new event seeded by an unmatched report."""
        return cls(
            id=f"storm_{uuid.uuid4().hex[:12]}",
            envelope=BoundingBox.around(report.latitude, report.longitude),
            earliest_report_at=report.timestamp,
            latest_report_at=report.timestamp,
        )

    @property
    def is_active(self) -> bool:
        return self.status == EventStatus.ACTIVE

    def absorb(self, report: Report) -> None:
        """Grow envelope and time span to cover the report."""
        self.envelope = self.envelope.include(report.latitude, report.longitude)
        self.earliest_report_at = min(self.earliest_report_at, report.timestamp)
        self.latest_report_at = max(self.latest_report_at, report.timestamp)

    def overlaps(self, bbox: BoundingBox, start: datetime, end: datetime) -> bool:
        return (self.envelope.intersects(bbox) and
                self.earliest_report_at <= end and self.latest_report_at >= start)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'id': self.id,
            'envelope': self.envelope.to_dict(),
            'earliest_report_at': self.earliest_report_at.isoformat(),
            'latest_report_at': self.latest_report_at.isoformat(),
            'status': self.status.value,
            'report_ids': list(self.report_ids),
            'max_intensity_mm': self.max_intensity_mm,
            'needs_reprocessing': self.needs_reprocessing,
            'created_at': self.created_at.isoformat(),
            'closed_at': _iso(self.closed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StormEvent":
        return cls(
            id=data['id'],
            envelope=BoundingBox.from_dict(data['envelope']),
            earliest_report_at=parse_timestamp(data['earliest_report_at']),
            latest_report_at=parse_timestamp(data['latest_report_at']),
            status=EventStatus(data.get('status', 'active')),
            report_ids=list(data.get('report_ids', [])),
            max_intensity_mm=float(data.get('max_intensity_mm', 0.0)),
            needs_reprocessing=bool(data.get('needs_reprocessing', False)),
            created_at=parse_timestamp(data['created_at']) if data.get('created_at') else utcnow(),
            closed_at=_from_iso(data.get('closed_at')),
        )


@dataclass
class ContourBand:
    """Area estimated to meet or exceed one intensity threshold."""
    threshold_inches: float
    geometry: BaseGeometry
    report_count: int = 0
    area_km2: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'threshold_inches': self.threshold_inches,
            'geometry': mapping(self.geometry),
            'report_count': self.report_count,
            'area_km2': round(self.area_km2, 3),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContourBand":
        return cls(
            threshold_inches=float(data['threshold_inches']),
            geometry=shape(data['geometry']),
            report_count=int(data.get('report_count', 0)),
            area_km2=float(data.get('area_km2', 0.0)),
        )


@dataclass
class ContourSet:
    """Nested intensity bands for one storm event, highest threshold first."""
    event_id: str
    generated_at: datetime
    bands: List[ContourBand] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.bands

    def ascending(self) -> List[ContourBand]:
        """Bands from lowest to highest threshold."""
        return list(reversed(self.bands))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_id': self.event_id,
            'generated_at': self.generated_at.isoformat(),
            'bands': [band.to_dict() for band in self.bands],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContourSet":
        return cls(
            event_id=data['event_id'],
            generated_at=parse_timestamp(data['generated_at']),
            bands=[ContourBand.from_dict(b) for b in data.get('bands', [])],
        )


@dataclass
class TierMetrics:
    """Confusion counts and scores for one prediction tier."""
    true_positives: int = 0
    false_positives: int = 0
    false_negatives: int = 0
    precision: float = 0.0
    recall: float = 0.0
    f1: float = 0.0
    intensity_mae_inches: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TierMetrics":
        return cls(**data)


@dataclass
class CalibrationRecord:
    """One calibration pass; history is append-only."""
    period_id: str
    territory_id: str
    true_positives: int = 0
    false_positives: int = 0
    false_negatives: int = 0
    true_negatives: int = 0
    precision: float = 0.0
    recall: float = 0.0
    f1: float = 0.0
    weights: Dict[ReportTier, float] = field(default_factory=dict)
    tier_metrics: Dict[ReportTier, TierMetrics] = field(default_factory=dict)
    reliability: Optional[float] = None
    skipped: bool = False
    applied_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: f"cal_{uuid.uuid4().hex[:12]}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'period_id': self.period_id,
            'territory_id': self.territory_id,
            'true_positives': self.true_positives,
            'false_positives': self.false_positives,
            'false_negatives': self.false_negatives,
            'true_negatives': self.true_negatives,
            'precision': self.precision,
            'recall': self.recall,
            'f1': self.f1,
            'weights': {str(int(t)): w for t, w in self.weights.items()},
            'tier_metrics': {str(int(t)): m.to_dict() for t, m in self.tier_metrics.items()},
            'reliability': self.reliability,
            'skipped': self.skipped,
            'applied_at': self.applied_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalibrationRecord":
        return cls(
            id=data['id'],
            period_id=data['period_id'],
            territory_id=data['territory_id'],
            true_positives=int(data.get('true_positives', 0)),
            false_positives=int(data.get('false_positives', 0)),
            false_negatives=int(data.get('false_negatives', 0)),
            true_negatives=int(data.get('true_negatives', 0)),
            precision=float(data.get('precision', 0.0)),
            recall=float(data.get('recall', 0.0)),
            f1=float(data.get('f1', 0.0)),
            weights={ReportTier(int(k)): float(v) for k, v in data.get('weights', {}).items()},
            tier_metrics={
                ReportTier(int(k)): TierMetrics.from_dict(v)
                for k, v in data.get('tier_metrics', {}).items()
            },
            reliability=data.get('reliability'),
            skipped=bool(data.get('skipped', False)),
            applied_at=parse_timestamp(data['applied_at']),
        )


@dataclass
class TerritoryAggregate:
    """Read-optimized heat-map cell, rebuildable from reports."""
    cell_id: str
    cumulative_probability: float
    report_count: int
    last_updated: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cell_id': self.cell_id,
            'cumulative_probability': self.cumulative_probability,
            'report_count': self.report_count,
            'last_updated': self.last_updated.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TerritoryAggregate":
        return cls(
            cell_id=data['cell_id'],
            cumulative_probability=float(data['cumulative_probability']),
            report_count=int(data['report_count']),
            last_updated=parse_timestamp(data['last_updated']),
        )
