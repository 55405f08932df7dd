"""
Intelligence store: append-only persistence for reports, storm events,
contour sets, calibration records and territory aggregates.

Reports, contour sets and calibration records are insert-only. The single
post-write mutation allowed on a report is setting `superseded_by`, once.
Storm events and territory aggregates are snapshots that are replaced as a
whole; concurrent writers to the same event serialize through
`event_transaction`.
"""

import copy
import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from .errors import ImmutableFieldError, StoreError
from .models import (
    BoundingBox, CalibrationRecord, ContourSet, EventStatus, Report,
    ReportTier, StormEvent, TerritoryAggregate
)

logger = logging.getLogger(__name__)


class IntelligenceStore(ABC):
    """Abstract get/put interface used by every engine."""

    def __init__(self):
        self._locks_guard = threading.Lock()
        self._event_locks: Dict[str, threading.RLock] = defaultdict(threading.RLock)

    @contextmanager
    def event_transaction(self, event_id: str) -> Iterator[None]:
        """Serialize writers touching the same storm event."""
        with self._locks_guard:
            lock = self._event_locks[event_id]
        with lock:
            yield

    # Reports
    @abstractmethod
    def add_report(self, report: Report) -> bool:
        """Insert a report. Returns False when the id already exists."""

    @abstractmethod
    def get_report(self, report_id: str) -> Optional[Report]:
        pass

    @abstractmethod
    def mark_superseded(self, report_id: str, superseded_by: str) -> None:
        """Set `superseded_by` once; rewriting it raises ImmutableFieldError."""

    @abstractmethod
    def list_reports(self, start: Optional[datetime] = None,
                     end: Optional[datetime] = None,
                     tiers: Optional[Iterable[ReportTier]] = None,
                     bbox: Optional[BoundingBox] = None,
                     include_superseded: bool = True) -> List[Report]:
        pass

    def get_reports(self, report_ids: Iterable[str]) -> List[Report]:
        reports = []
        for report_id in report_ids:
            report = self.get_report(report_id)
            if report is not None:
                reports.append(report)
        return reports

    # Storm events
    @abstractmethod
    def put_event(self, event: StormEvent) -> None:
        pass

    @abstractmethod
    def get_event(self, event_id: str) -> Optional[StormEvent]:
        pass

    @abstractmethod
    def list_events(self, status: Optional[EventStatus] = None) -> List[StormEvent]:
        pass

    # Contours
    @abstractmethod
    def add_contour_set(self, contour_set: ContourSet) -> None:
        pass

    @abstractmethod
    def latest_contour_set(self, event_id: str) -> Optional[ContourSet]:
        pass

    # Calibration
    @abstractmethod
    def add_calibration_record(self, record: CalibrationRecord) -> None:
        pass

    @abstractmethod
    def list_calibration_records(self, territory_id: Optional[str] = None) -> List[CalibrationRecord]:
        """Records ordered oldest first."""

    def latest_calibration_record(self, territory_id: str,
                                  include_skipped: bool = False) -> Optional[CalibrationRecord]:
        records = [
            r for r in self.list_calibration_records(territory_id)
            if include_skipped or not r.skipped
        ]
        return records[-1] if records else None

    # Territory
    @abstractmethod
    def put_territory_aggregate(self, aggregate: TerritoryAggregate) -> None:
        pass

    @abstractmethod
    def delete_territory_aggregate(self, cell_id: str) -> None:
        pass

    @abstractmethod
    def list_territory_aggregates(self) -> List[TerritoryAggregate]:
        pass


def _report_matches(report: Report, start, end, tiers, bbox, include_superseded) -> bool:
    if start is not None and report.timestamp < start:
        return False
    if end is not None and report.timestamp > end:
        return False
    if tiers is not None and report.source_tier not in tiers:
        return False
    if bbox is not None and not bbox.contains(report.latitude, report.longitude):
        return False
    if not include_superseded and report.superseded_by is not None:
        return False
    return True


class InMemoryIntelligenceStore(IntelligenceStore):
    """Dictionary-backed store; hands out copies so callers cannot bypass the rules."""

    def __init__(self):
        super().__init__()
        self._lock = threading.RLock()
        self._reports: Dict[str, Report] = {}
        self._events: Dict[str, StormEvent] = {}
        self._contours: Dict[str, List[ContourSet]] = defaultdict(list)
        self._calibration: List[CalibrationRecord] = []
        self._territory: Dict[str, TerritoryAggregate] = {}

    def add_report(self, report: Report) -> bool:
        with self._lock:
            if report.id in self._reports:
                return False
            self._reports[report.id] = copy.deepcopy(report)
            return True

    def get_report(self, report_id: str) -> Optional[Report]:
        with self._lock:
            report = self._reports.get(report_id)
            return copy.deepcopy(report) if report else None

    def mark_superseded(self, report_id: str, superseded_by: str) -> None:
        with self._lock:
            report = self._reports.get(report_id)
            if report is None:
                raise StoreError(f"Unknown report {report_id}")
            if report.superseded_by is not None:
                if report.superseded_by == superseded_by:
                    return
                raise ImmutableFieldError(
                    f"Report {report_id} already superseded by {report.superseded_by}"
                )
            report.superseded_by = superseded_by

    def list_reports(self, start=None, end=None, tiers=None, bbox=None,
                     include_superseded=True) -> List[Report]:
        tiers = set(tiers) if tiers is not None else None
        with self._lock:
            found = [
                copy.deepcopy(r) for r in self._reports.values()
                if _report_matches(r, start, end, tiers, bbox, include_superseded)
            ]
        return sorted(found, key=lambda r: (r.timestamp, r.id))

    def put_event(self, event: StormEvent) -> None:
        with self._lock:
            self._events[event.id] = copy.deepcopy(event)

    def get_event(self, event_id: str) -> Optional[StormEvent]:
        with self._lock:
            event = self._events.get(event_id)
            return copy.deepcopy(event) if event else None

    def list_events(self, status: Optional[EventStatus] = None) -> List[StormEvent]:
        with self._lock:
            events = [
                copy.deepcopy(e) for e in self._events.values()
                if status is None or e.status == status
            ]
        return sorted(events, key=lambda e: (e.earliest_report_at, e.id))

    def add_contour_set(self, contour_set: ContourSet) -> None:
        with self._lock:
            self._contours[contour_set.event_id].append(contour_set)

    def latest_contour_set(self, event_id: str) -> Optional[ContourSet]:
        with self._lock:
            history = self._contours.get(event_id)
            return history[-1] if history else None

    def add_calibration_record(self, record: CalibrationRecord) -> None:
        with self._lock:
            if any(r.id == record.id for r in self._calibration):
                raise ImmutableFieldError(f"Calibration record {record.id} already exists")
            self._calibration.append(copy.deepcopy(record))

    def list_calibration_records(self, territory_id: Optional[str] = None) -> List[CalibrationRecord]:
        with self._lock:
            return [
                copy.deepcopy(r) for r in self._calibration
                if territory_id is None or r.territory_id == territory_id
            ]

    def put_territory_aggregate(self, aggregate: TerritoryAggregate) -> None:
        with self._lock:
            self._territory[aggregate.cell_id] = copy.deepcopy(aggregate)

    def delete_territory_aggregate(self, cell_id: str) -> None:
        with self._lock:
            self._territory.pop(cell_id, None)

    def list_territory_aggregates(self) -> List[TerritoryAggregate]:
        with self._lock:
            return [copy.deepcopy(a) for a in self._territory.values()]


class SQLiteIntelligenceStore(IntelligenceStore):
    """SQLite-backed store; one short-lived connection per operation."""

    def __init__(self, db_path: Path):
        super().__init__()
        self.db_path = Path(db_path)
        self._init_database()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_database(self):
        """Initialize SQLite tables."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS reports (
                    id TEXT PRIMARY KEY,
                    source_tier INTEGER,
                    latitude REAL,
                    longitude REAL,
                    ts_epoch REAL,
                    superseded_by TEXT,
                    event_id TEXT,
                    data TEXT
                )
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS storm_events (
                    id TEXT PRIMARY KEY,
                    status TEXT,
                    data TEXT
                )
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS contour_sets (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_id TEXT,
                    generated_at TEXT,
                    data TEXT
                )
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS calibration_records (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT UNIQUE,
                    territory_id TEXT,
                    data TEXT
                )
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS territory_aggregates (
                    cell_id TEXT PRIMARY KEY,
                    data TEXT
                )
            ''')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_reports_time ON reports(ts_epoch)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_reports_event ON reports(event_id)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_contours_event ON contour_sets(event_id)')

    def add_report(self, report: Report) -> bool:
        try:
            with self._connect() as conn:
                conn.execute('''
                    INSERT INTO reports
                    (id, source_tier, latitude, longitude, ts_epoch, superseded_by, event_id, data)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    report.id,
                    int(report.source_tier),
                    report.latitude,
                    report.longitude,
                    report.timestamp.timestamp(),
                    report.superseded_by,
                    report.event_id,
                    json.dumps(report.to_dict()),
                ))
            return True
        except sqlite3.IntegrityError:
            return False

    def get_report(self, report_id: str) -> Optional[Report]:
        with self._connect() as conn:
            row = conn.execute('SELECT data FROM reports WHERE id = ?', (report_id,)).fetchone()
        return Report.from_dict(json.loads(row[0])) if row else None

    def mark_superseded(self, report_id: str, superseded_by: str) -> None:
        with self._connect() as conn:
            row = conn.execute(
                'SELECT superseded_by, data FROM reports WHERE id = ?', (report_id,)
            ).fetchone()
            if row is None:
                raise StoreError(f"Unknown report {report_id}")
            current, data = row
            if current is not None:
                if current == superseded_by:
                    return
                raise ImmutableFieldError(
                    f"Report {report_id} already superseded by {current}"
                )
            payload = json.loads(data)
            payload['superseded_by'] = superseded_by
            conn.execute(
                'UPDATE reports SET superseded_by = ?, data = ? WHERE id = ? AND superseded_by IS NULL',
                (superseded_by, json.dumps(payload), report_id)
            )

    def list_reports(self, start=None, end=None, tiers=None, bbox=None,
                     include_superseded=True) -> List[Report]:
        clauses = []
        params: list = []
        if start is not None:
            clauses.append('ts_epoch >= ?')
            params.append(start.timestamp())
        if end is not None:
            clauses.append('ts_epoch <= ?')
            params.append(end.timestamp())
        if tiers is not None:
            tier_values = [int(t) for t in tiers]
            if not tier_values:
                return []
            clauses.append(f"source_tier IN ({','.join('?' for _ in tier_values)})")
            params.extend(tier_values)
        if bbox is not None:
            clauses.append('latitude BETWEEN ? AND ? AND longitude BETWEEN ? AND ?')
            params.extend([bbox.min_lat, bbox.max_lat, bbox.min_lon, bbox.max_lon])
        if not include_superseded:
            clauses.append('superseded_by IS NULL')

        query = 'SELECT data FROM reports'
        if clauses:
            query += ' WHERE ' + ' AND '.join(clauses)
        query += ' ORDER BY ts_epoch, id'

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Report.from_dict(json.loads(row[0])) for row in rows]

    def put_event(self, event: StormEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                'INSERT OR REPLACE INTO storm_events (id, status, data) VALUES (?, ?, ?)',
                (event.id, event.status.value, json.dumps(event.to_dict()))
            )

    def get_event(self, event_id: str) -> Optional[StormEvent]:
        with self._connect() as conn:
            row = conn.execute('SELECT data FROM storm_events WHERE id = ?', (event_id,)).fetchone()
        return StormEvent.from_dict(json.loads(row[0])) if row else None

    def list_events(self, status: Optional[EventStatus] = None) -> List[StormEvent]:
        with self._connect() as conn:
            if status is None:
                rows = conn.execute('SELECT data FROM storm_events').fetchall()
            else:
                rows = conn.execute(
                    'SELECT data FROM storm_events WHERE status = ?', (status.value,)
                ).fetchall()
        events = [StormEvent.from_dict(json.loads(row[0])) for row in rows]
        return sorted(events, key=lambda e: (e.earliest_report_at, e.id))

    def add_contour_set(self, contour_set: ContourSet) -> None:
        with self._connect() as conn:
            conn.execute(
                'INSERT INTO contour_sets (event_id, generated_at, data) VALUES (?, ?, ?)',
                (contour_set.event_id, contour_set.generated_at.isoformat(),
                 json.dumps(contour_set.to_dict()))
            )

    def latest_contour_set(self, event_id: str) -> Optional[ContourSet]:
        with self._connect() as conn:
            row = conn.execute(
                'SELECT data FROM contour_sets WHERE event_id = ? ORDER BY seq DESC LIMIT 1',
                (event_id,)
            ).fetchone()
        return ContourSet.from_dict(json.loads(row[0])) if row else None

    def add_calibration_record(self, record: CalibrationRecord) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    'INSERT INTO calibration_records (id, territory_id, data) VALUES (?, ?, ?)',
                    (record.id, record.territory_id, json.dumps(record.to_dict()))
                )
        except sqlite3.IntegrityError as e:
            raise ImmutableFieldError(f"Calibration record {record.id} already exists") from e

    def list_calibration_records(self, territory_id: Optional[str] = None) -> List[CalibrationRecord]:
        with self._connect() as conn:
            if territory_id is None:
                rows = conn.execute('SELECT data FROM calibration_records ORDER BY seq').fetchall()
            else:
                rows = conn.execute(
                    'SELECT data FROM calibration_records WHERE territory_id = ? ORDER BY seq',
                    (territory_id,)
                ).fetchall()
        return [CalibrationRecord.from_dict(json.loads(row[0])) for row in rows]

    def put_territory_aggregate(self, aggregate: TerritoryAggregate) -> None:
        with self._connect() as conn:
            conn.execute(
                'INSERT OR REPLACE INTO territory_aggregates (cell_id, data) VALUES (?, ?)',
                (aggregate.cell_id, json.dumps(aggregate.to_dict()))
            )

    def delete_territory_aggregate(self, cell_id: str) -> None:
        with self._connect() as conn:
            conn.execute('DELETE FROM territory_aggregates WHERE cell_id = ?', (cell_id,))

    def list_territory_aggregates(self) -> List[TerritoryAggregate]:
        with self._connect() as conn:
            rows = conn.execute('SELECT data FROM territory_aggregates').fetchall()
        return [TerritoryAggregate.from_dict(json.loads(row[0])) for row in rows]


def create_store(backend: str = "memory", sqlite_path: Optional[str] = None) -> IntelligenceStore:
    """Build the configured store backend."""
    if backend == "sqlite":
        path = Path(sqlite_path or "data/hailfusion.db")
        logger.info(f"Using SQLite intelligence store at {path}")
        return SQLiteIntelligenceStore(path)
    if backend == "memory":
        return InMemoryIntelligenceStore()
    raise StoreError(f"Unknown store backend: {backend}")
