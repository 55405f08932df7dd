"""
Tests for contour band generation.
"""

import math

import pytest
from shapely.geometry import Point, Polygon

from hailfusion.contours import ContourGenerator, local_projection, reproject
from hailfusion.errors import ContourGenerationError
from hailfusion.models import ReportTier, StormEvent

from conftest import OKC_LAT, OKC_LON, make_report


def assert_nested(contour_set):
    bands = contour_set.ascending()
    for lower, higher in zip(bands, bands[1:]):
        assert lower.threshold_inches < higher.threshold_inches
        assert lower.geometry.buffer(1e-9).contains(higher.geometry)


@pytest.fixture
def generator(memory_store, test_config, clock):
    return ContourGenerator(memory_store, test_config.contours, clock)


@pytest.mark.unit
class TestBuild:

    def test_no_qualifying_reports_is_empty(self, generator):
        contour_set = generator.build("storm_1", [make_report(inches=0.5)])

        assert contour_set.is_empty
        assert contour_set.bands == []

    def test_single_report_gives_one_circle(self, generator):
        report = make_report(inches=1.2)

        contour_set = generator.build("storm_1", [report])

        assert len(contour_set.bands) == 1
        band = contour_set.bands[0]
        assert band.threshold_inches == 1.0
        assert isinstance(band.geometry, Polygon)
        assert band.geometry.contains(Point(OKC_LON, OKC_LAT))
        # 2 km circle plus 1.5 km uncertainty
        assert band.area_km2 == pytest.approx(math.pi * 3.5 ** 2, rel=0.02)

    def test_three_bands_are_nested(self, generator):
        """Scenario B: reports spanning three bands yield three nested bands."""
        reports = [
            make_report(inches=1.1, lat=OKC_LAT - 0.05),
            make_report(inches=1.6, lat=OKC_LAT, lon=OKC_LON + 0.03),
            make_report(inches=2.2, lat=OKC_LAT + 0.02, lon=OKC_LON - 0.02),
        ]

        contour_set = generator.build("storm_1", reports)

        assert [b.threshold_inches for b in contour_set.bands] == [2.0, 1.5, 1.0]
        assert [b.threshold_inches for b in contour_set.ascending()] == [1.0, 1.5, 2.0]
        assert_nested(contour_set)
        assert [b.report_count for b in contour_set.bands] == [1, 2, 3]
        for report in reports:
            assert contour_set.ascending()[0].geometry.contains(Point(report.longitude, report.latitude))

    def test_hull_for_three_or_more_points(self, generator):
        reports = [
            make_report(inches=2.5, lat=OKC_LAT, lon=OKC_LON),
            make_report(inches=2.5, lat=OKC_LAT + 0.2, lon=OKC_LON),
            make_report(inches=2.5, lat=OKC_LAT + 0.1, lon=OKC_LON + 0.2),
        ]

        band = generator.build("storm_1", reports).bands[0]

        centroid = Point(OKC_LON + 0.067, OKC_LAT + 0.1)
        assert band.geometry.contains(centroid)
        assert band.area_km2 > 3 * math.pi * 3.5 ** 2

    def test_collinear_points_fall_back_to_circles(self, generator):
        reports = [make_report(inches=1.8, lat=OKC_LAT + 0.01 * i) for i in range(3)]

        band = generator.build("storm_1", reports).bands[0]

        assert not band.geometry.is_empty
        for report in reports:
            assert band.geometry.contains(Point(report.longitude, report.latitude))

    def test_empty_middle_bands_are_still_emitted(self, generator):
        reports = [make_report(inches=0.8), make_report(inches=2.1, lat=OKC_LAT + 0.1)]

        contour_set = generator.build("storm_1", reports)

        assert [b.threshold_inches for b in contour_set.bands] == [2.0, 1.5, 1.0, 0.75]
        assert [b.report_count for b in contour_set.bands] == [1, 1, 1, 2]
        assert contour_set.bands[1].geometry.equals(contour_set.bands[0].geometry)
        assert_nested(contour_set)

    def test_superseded_reports_are_ignored(self, generator):
        superseded = make_report(inches=2.5)
        superseded.superseded_by = "archive_x"

        contour_set = generator.build("storm_1", [superseded, make_report(inches=1.0, lat=OKC_LAT + 0.1)])

        assert [b.threshold_inches for b in contour_set.bands] == [1.0]

    def test_local_projection_is_metric(self):
        fwd, inv = local_projection(OKC_LAT, OKC_LON)

        x, y = fwd(OKC_LON, OKC_LAT + 0.01)
        assert x == pytest.approx(0, abs=1)
        assert y == pytest.approx(1110, rel=0.01)
        lon, lat = inv(x, y)
        assert lat == pytest.approx(OKC_LAT + 0.01)

    @pytest.mark.parametrize("inches", [0.75, 1.0, 1.5, 2.0])
    def test_report_exactly_on_threshold_reaches_it(self, generator, inches):
        contour_set = generator.build("storm_1", [make_report(inches=inches)])

        assert [b.threshold_inches for b in contour_set.bands] == [inches]

    def test_reproject_round_trip(self):
        fwd, inv = local_projection(OKC_LAT, OKC_LON)
        square = Polygon([(0, 0), (1000, 0), (1000, 1000), (0, 1000)])

        lonlat = reproject(square, inv)
        back = reproject(lonlat, fwd)

        assert lonlat.bounds[0] == pytest.approx(OKC_LON)
        assert lonlat.bounds[1] == pytest.approx(OKC_LAT)
        assert back.area == pytest.approx(1_000_000, rel=1e-6)


@pytest.mark.integration
class TestGenerate:

    def test_generate_stores_latest(self, generator, engine, memory_store):
        engine.ingest([make_report(inches=1.2)])
        event = memory_store.list_events()[0]

        generator.generate(event.id)

        latest = memory_store.latest_contour_set(event.id)
        assert latest is not None
        assert len(latest.bands) == 1

    def test_single_report_event_yields_circle(self, generator, engine, memory_store):
        """Scenario B: an event with exactly one report yields one circular polygon."""
        engine.ingest([make_report(ReportTier.ARCHIVE, inches=1.75)])
        event = memory_store.list_events()[0]

        contour_set = generator.generate(event.id)

        assert len(contour_set.bands) == 1
        polygon = contour_set.bands[0].geometry
        assert isinstance(polygon, Polygon)
        assert len(polygon.interiors) == 0

    def test_unknown_event(self, generator):
        with pytest.raises(ContourGenerationError):
            generator.generate("storm_missing")

    def test_regenerate_flags_failures(self, generator, engine, memory_store, monkeypatch):
        engine.ingest([make_report(inches=1.2)])
        event = memory_store.list_events()[0]

        def broken(event_id, reports):
            raise ValueError("degenerate geometry")

        monkeypatch.setattr(generator, "build", broken)
        results = generator.regenerate([event.id])

        assert results == {}
        assert memory_store.get_event(event.id).needs_reprocessing

    def test_success_clears_reprocessing_flag(self, generator, memory_store):
        report = make_report(inches=1.2)
        event = StormEvent.start(report)
        event.report_ids.append(report.id)
        event.needs_reprocessing = True
        memory_store.add_report(report)
        memory_store.put_event(event)

        generator.regenerate([event.id])

        assert not memory_store.get_event(event.id).needs_reprocessing
