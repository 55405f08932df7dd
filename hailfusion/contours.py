"""
Contour generation: nested intensity bands for a storm event.

Shapes are built in a local azimuthal-equidistant projection centred on the
event so radii and areas are in meters, then projected back to lon/lat.
Nesting is enforced in lon/lat space by unioning each band with every
higher band.
"""

import logging
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import shapely
from pyproj import CRS, Transformer
from shapely.geometry import MultiPoint, Point, Polygon
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union

from .config import ContourConfig
from .errors import ContourGenerationError
from .models import ContourBand, ContourSet, Report, utcnow
from .store import IntelligenceStore

logger = logging.getLogger(__name__)


def local_projection(center_lat: float, center_lon: float) -> Tuple[Callable, Callable]:
    """Forward and inverse transforms for an AEQD plane centred on the point."""
    aeqd = CRS.from_proj4(
        f"+proj=aeqd +lat_0={center_lat:.8f} +lon_0={center_lon:.8f} "
        f"+x_0=0 +y_0=0 +datum=WGS84 +units=m +no_defs"
    )
    wgs84 = CRS.from_epsg(4326)
    fwd = Transformer.from_crs(wgs84, aeqd, always_xy=True).transform
    inv = Transformer.from_crs(aeqd, wgs84, always_xy=True).transform
    return fwd, inv


def reproject(geometry: BaseGeometry, func: Callable) -> BaseGeometry:
    """Apply a vectorised (x, y) transform to every coordinate of a geometry."""
    def apply(coords: np.ndarray) -> np.ndarray:
        x, y = func(coords[:, 0], coords[:, 1])
        return np.column_stack([x, y])
    return shapely.transform(geometry, apply)


class ContourGenerator:
    """Derives ContourSets from the live reports of a storm event."""

    def __init__(self, store: IntelligenceStore, config: Optional[ContourConfig] = None,
                 clock=utcnow):
        self.store = store
        self.config = config or ContourConfig()
        self.clock = clock

    def _bucket(self, reports: Sequence[Report]) -> Dict[float, List[Report]]:
        """Group reports by the highest threshold they reach."""
        thresholds = sorted(self.config.band_thresholds_inches)
        buckets: Dict[float, List[Report]] = {t: [] for t in thresholds}
        for report in reports:
            reached = [t for t in thresholds if report.intensity_inches >= t]
            if reached:
                buckets[reached[-1]].append(report)
        return buckets

    def _circles(self, points: List[Point]) -> BaseGeometry:
        return unary_union([
            p.buffer(self.config.circle_radius_m, quad_segs=self.config.circle_quad_segs)
            for p in points
        ])

    def _band_shape(self, points: List[Point]) -> BaseGeometry:
        """Projected shape for one bucket before the uncertainty buffer."""
        if len(points) >= 3:
            hull = MultiPoint(points).convex_hull
            if isinstance(hull, Polygon) and hull.area > 0:
                return hull
        return self._circles(points)

    def build(self, event_id: str, reports: Sequence[Report]) -> ContourSet:
        """Pure contour computation; does not touch the store."""
        contour_set = ContourSet(event_id=event_id, generated_at=self.clock())
        live = [r for r in reports if r.is_active]
        buckets = self._bucket(live)
        populated = [t for t, members in buckets.items() if members]
        if not populated:
            return contour_set

        qualifying = [r for members in buckets.values() for r in members]
        center_lat = sum(r.latitude for r in qualifying) / len(qualifying)
        center_lon = sum(r.longitude for r in qualifying) / len(qualifying)
        fwd, inv = local_projection(center_lat, center_lon)

        lowest, highest = min(populated), max(populated)
        accumulated: Optional[BaseGeometry] = None
        count = 0
        for threshold in sorted(buckets, reverse=True):
            if threshold > highest or threshold < lowest:
                continue
            members = buckets[threshold]
            count += len(members)
            if members:
                points = [Point(fwd(r.longitude, r.latitude)) for r in members]
                shape_m = self._band_shape(points).buffer(
                    self.config.uncertainty_radius_m, quad_segs=self.config.circle_quad_segs)
                shape_ll = reproject(shape_m, inv)
                accumulated = shape_ll if accumulated is None else unary_union([shape_ll, accumulated])

            area_km2 = reproject(accumulated, fwd).area / 1_000_000.0
            contour_set.bands.append(ContourBand(
                threshold_inches=threshold,
                geometry=accumulated,
                report_count=count,
                area_km2=area_km2,
            ))

        return contour_set

    def generate(self, event_id: str) -> ContourSet:
        """Build and store the contour set for one event."""
        event = self.store.get_event(event_id)
        if event is None:
            raise ContourGenerationError(f"Unknown storm event {event_id}", event_id=event_id)

        reports = [r for r in self.store.get_reports(event.report_ids) if r.is_active]
        try:
            contour_set = self.build(event_id, reports)
        except (ValueError, ArithmeticError) as e:
            raise ContourGenerationError(f"Contour build failed: {e}", event_id=event_id) from e

        self.store.add_contour_set(contour_set)
        if event.needs_reprocessing:
            with self.store.event_transaction(event_id):
                current = self.store.get_event(event_id)
                if current is not None:
                    current.needs_reprocessing = False
                    self.store.put_event(current)

        logger.info(
            f"Generated {len(contour_set.bands)} contour bands for {event_id} "
            f"from {len(reports)} reports"
        )
        return contour_set

    def regenerate(self, event_ids) -> Dict[str, ContourSet]:
        """Regenerate several events; failures are flagged per event."""
        results = {}
        for event_id in sorted(set(event_ids)):
            try:
                results[event_id] = self.generate(event_id)
            except ContourGenerationError as e:
                logger.error(f"Contour generation failed for {event_id}: {e}", exc_info=True)
                self._flag(event_id)
        return results

    def _flag(self, event_id: str) -> None:
        with self.store.event_transaction(event_id):
            event = self.store.get_event(event_id)
            if event is not None:
                event.needs_reprocessing = True
                self.store.put_event(event)
