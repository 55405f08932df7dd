"""
Tests for the territory heat map projection.
"""

import pytest

from hailfusion.territory import (
    TerritoryProjector, cumulative_probability, hit_probability, size_weight
)

from conftest import OKC_LAT, OKC_LON, make_report


@pytest.fixture
def projector(memory_store, test_config, clock):
    return TerritoryProjector(memory_store, test_config.territory, clock)


def scored(inches, confidence, **kwargs):
    report = make_report(inches=inches, **kwargs)
    report.confidence = confidence
    return report


@pytest.mark.unit
class TestProbability:

    @pytest.mark.parametrize("inches,weight", [
        (0.75, 0.3),
        (1.0, 0.5),
        (1.49, 0.5),
        (1.5, 0.7),
        (2.0, 1.0),
        (3.5, 1.0),
    ])
    def test_size_weight(self, inches, weight):
        assert size_weight(inches) == weight

    def test_hit_probability(self):
        assert hit_probability(scored(2.0, 80)) == pytest.approx(0.8)
        assert hit_probability(scored(1.0, 60)) == pytest.approx(0.3)

    def test_cumulative_probability(self):
        assert cumulative_probability([]) == 0.0
        assert cumulative_probability([0.5, 0.5]) == pytest.approx(0.75)
        assert cumulative_probability([1.2]) == 1.0


@pytest.mark.unit
class TestProjector:

    def test_refresh_for_touched_cells(self, projector, memory_store):
        reports = [scored(2.0, 80), scored(1.5, 70, lat=OKC_LAT + 0.001)]
        for report in reports:
            memory_store.add_report(report)

        aggregates = projector.refresh_for(reports)

        assert len(aggregates) == 1
        assert aggregates[0].report_count == 2
        assert aggregates[0].cumulative_probability == pytest.approx(1 - 0.2 * 0.51)

    def test_superseded_reports_leave_the_cell(self, projector, memory_store):
        report = scored(2.0, 80)
        memory_store.add_report(report)
        projector.refresh_for([report])

        memory_store.mark_superseded(report.id, "archive_elsewhere")
        projector.refresh_for([report])

        assert memory_store.list_territory_aggregates() == []

    def test_rebuild_matches_incremental(self, projector, memory_store):
        reports = [
            scored(2.0, 80),
            scored(1.0, 65, lat=OKC_LAT + 0.05),
            scored(1.75, 72, lon=OKC_LON + 0.05),
        ]
        for report in reports:
            memory_store.add_report(report)
        projector.refresh_for(reports)
        incremental = {a.cell_id: a.cumulative_probability for a in memory_store.list_territory_aggregates()}

        assert projector.rebuild() == 3

        rebuilt = {a.cell_id: a.cumulative_probability for a in memory_store.list_territory_aggregates()}
        assert rebuilt == pytest.approx(incremental)

    def test_heat_map_sorted_by_probability(self, projector, memory_store):
        for report in (scored(1.0, 60), scored(2.5, 85, lat=OKC_LAT + 0.05)):
            memory_store.add_report(report)
        projector.rebuild()

        cells = projector.heat_map()

        assert [c['report_count'] for c in cells] == [1, 1]
        assert cells[0]['cumulative_probability'] > cells[1]['cumulative_probability']
        assert cells[0]['latitude'] == pytest.approx(OKC_LAT + 0.05, abs=0.01)
