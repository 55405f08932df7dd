"""Territory heat map: cumulative hail probability per grid cell."""

import logging
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Optional

import numpy as np

from .config import TerritoryConfig
from .geo import cell_bounds, cell_id
from .models import BoundingBox, Report, TerritoryAggregate, utcnow
from .store import IntelligenceStore

logger = logging.getLogger(__name__)

# (minimum inches, weight), checked in order
SIZE_WEIGHTS = (
    (2.0, 1.0),
    (1.5, 0.7),
    (1.0, 0.5),
)
DEFAULT_SIZE_WEIGHT = 0.3


def size_weight(intensity_inches: float) -> float:
    for minimum, weight in SIZE_WEIGHTS:
        if intensity_inches >= minimum:
            return weight
    return DEFAULT_SIZE_WEIGHT


def hit_probability(report: Report) -> float:
    return size_weight(report.intensity_inches) * report.confidence / 100.0


def cumulative_probability(probabilities: Iterable[float]) -> float:
    """1 - product of (1 - p)."""
    values = np.clip(np.fromiter(probabilities, dtype=float), 0.0, 1.0)
    if values.size == 0:
        return 0.0
    return float(1.0 - np.prod(1.0 - values))


class TerritoryProjector:
    """Keeps TerritoryAggregates in step with the live reports."""

    def __init__(self, store: IntelligenceStore, config: Optional[TerritoryConfig] = None,
                 clock: Callable = utcnow):
        self.store = store
        self.config = config or TerritoryConfig()
        self.clock = clock

    def cell_for(self, report: Report) -> str:
        return cell_id(report.latitude, report.longitude, self.config.grid_size_deg)

    def _aggregate(self, cell: str, reports: List[Report]) -> TerritoryAggregate:
        return TerritoryAggregate(
            cell_id=cell,
            cumulative_probability=cumulative_probability(hit_probability(r) for r in reports),
            report_count=len(reports),
            last_updated=self.clock(),
        )

    def refresh_cells(self, cells: Iterable[str]) -> List[TerritoryAggregate]:
        """Recompute the given cells from the store."""
        aggregates = []
        for cell in sorted(set(cells)):
            min_lat, max_lat, min_lon, max_lon = cell_bounds(cell, self.config.grid_size_deg)
            candidates = self.store.list_reports(
                bbox=BoundingBox(min_lat, max_lat, min_lon, max_lon),
                include_superseded=False,
            )
            reports = [r for r in candidates if self.cell_for(r) == cell]
            if not reports:
                self.store.delete_territory_aggregate(cell)
                continue
            aggregate = self._aggregate(cell, reports)
            self.store.put_territory_aggregate(aggregate)
            aggregates.append(aggregate)
        return aggregates

    def refresh_for(self, reports: Iterable[Report]) -> List[TerritoryAggregate]:
        """Recompute every cell touched by an ingest pass."""
        return self.refresh_cells(self.cell_for(r) for r in reports)

    def rebuild(self) -> int:
        """Recompute every cell from scratch. Returns the cell count."""
        by_cell: Dict[str, List[Report]] = defaultdict(list)
        for report in self.store.list_reports(include_superseded=False):
            by_cell[self.cell_for(report)].append(report)

        for aggregate in self.store.list_territory_aggregates():
            if aggregate.cell_id not in by_cell:
                self.store.delete_territory_aggregate(aggregate.cell_id)

        for cell, reports in by_cell.items():
            self.store.put_territory_aggregate(self._aggregate(cell, reports))

        logger.info(f"Rebuilt territory heat map: {len(by_cell)} cells")
        return len(by_cell)

    def heat_map(self, bbox: Optional[BoundingBox] = None) -> List[Dict]:
        cells = []
        for aggregate in self.store.list_territory_aggregates():
            min_lat, max_lat, min_lon, max_lon = cell_bounds(aggregate.cell_id, self.config.grid_size_deg)
            center_lat = (min_lat + max_lat) / 2
            center_lon = (min_lon + max_lon) / 2
            if bbox is not None and not bbox.contains(center_lat, center_lon):
                continue
            entry = aggregate.to_dict()
            entry['latitude'] = round(center_lat, 6)
            entry['longitude'] = round(center_lon, 6)
            cells.append(entry)
        return sorted(cells, key=lambda c: c['cumulative_probability'], reverse=True)
