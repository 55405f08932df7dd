"""
Tests for the source adapters: retry/backoff, circuit breaking, timeouts,
HTTP classification, decode validation and the per-tier normalization.
"""

import asyncio
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from hailfusion.adapters import (
    ArchiveAdapter, DecodeServiceClient, FetchWindow, GroundTruthAdapter,
    RealtimeAdapter, classify_http_error, parse_coordinate, restamp_to_day
)
from hailfusion.adapters.decode import DecodedRecord, validate_record
from hailfusion.config import ArchiveConfig, DecodeServiceConfig, GroundTruthConfig, RetryConfig
from hailfusion.errors import (
    CircuitOpenError, DataIntegrityError, FetchErrorType, PermanentFetchError,
    TransientFetchError
)
from hailfusion.models import MM_PER_INCH, ReportTier

from conftest import OKC_LAT, OKC_LON, StaticAdapter, make_report


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self):
        return self.value


class ScriptedAdapter(StaticAdapter):
    """Raises the scripted errors in order, then returns its reports."""

    def __init__(self, errors, **kwargs):
        super().__init__(ReportTier.REALTIME, [make_report()], **kwargs)
        self.errors = list(errors)
        self.attempts = 0

    async def _fetch_once(self, window):
        self.attempts += 1
        if self.errors:
            raise self.errors.pop(0)
        return await super()._fetch_once(window)


def window_at(moment):
    return FetchWindow(moment - timedelta(minutes=10), moment)


def transient():
    return TransientFetchError("connection reset", FetchErrorType.NETWORK_ERROR)


@pytest.mark.unit
class TestRetryAndBreaker:

    async def test_backoff_is_1_2_4_seconds(self, no_sleep, t0):
        adapter = ScriptedAdapter([transient(), transient(), transient()], sleep=no_sleep)

        response = await adapter.fetch(window_at(t0))

        assert response.success
        assert adapter.attempts == 4
        assert [c.args[0] for c in no_sleep.await_args_list] == [1.0, 2.0, 4.0]
        assert adapter.metrics['retry_count'] == 3

    async def test_exhausted_retries_report_failure(self, no_sleep, t0):
        adapter = ScriptedAdapter([transient() for _ in range(4)], sleep=no_sleep)

        response = await adapter.fetch(window_at(t0))

        assert not response.success
        assert isinstance(response.error, TransientFetchError)
        assert adapter.attempts == 4
        assert not adapter.degraded

    async def test_permanent_error_degrades_immediately(self, no_sleep, t0):
        error = PermanentFetchError("bad token", FetchErrorType.AUTHENTICATION_ERROR, 401)
        adapter = ScriptedAdapter([error], sleep=no_sleep)

        first = await adapter.fetch(window_at(t0))
        second = await adapter.fetch(window_at(t0))

        assert not first.success
        assert adapter.attempts == 1
        no_sleep.assert_not_awaited()
        assert adapter.degraded
        assert isinstance(second.error, CircuitOpenError)
        assert adapter.attempts == 1

    async def test_breaker_opens_after_consecutive_failures(self, no_sleep, t0):
        clock = FakeMonotonic()
        retry = RetryConfig(max_retries=0, failure_threshold=5, cooldown_seconds=900)
        adapter = ScriptedAdapter([transient() for _ in range(5)],
                                  retry_config=retry, sleep=no_sleep, clock=clock)

        for _ in range(4):
            await adapter.fetch(window_at(t0))
            assert not adapter.degraded
        await adapter.fetch(window_at(t0))

        assert adapter.degraded
        assert adapter.circuit_breaker.state == "open"

        skipped = await adapter.fetch(window_at(t0))
        assert isinstance(skipped.error, CircuitOpenError)
        assert adapter.attempts == 5

        clock.value += 901
        assert not adapter.degraded
        trial = await adapter.fetch(window_at(t0))

        assert trial.success
        assert adapter.circuit_breaker.state == "closed"
        assert adapter.attempts == 6

    async def test_failed_half_open_trial_reopens(self, no_sleep, t0):
        clock = FakeMonotonic()
        retry = RetryConfig(max_retries=0, failure_threshold=1, cooldown_seconds=60)
        adapter = ScriptedAdapter([transient(), transient()],
                                  retry_config=retry, sleep=no_sleep, clock=clock)

        await adapter.fetch(window_at(t0))
        clock.value += 61
        await adapter.fetch(window_at(t0))

        assert adapter.degraded

    async def test_reset_clears_degraded(self, no_sleep, t0):
        adapter = ScriptedAdapter([PermanentFetchError("forbidden", status_code=403)], sleep=no_sleep)
        await adapter.fetch(window_at(t0))
        assert adapter.degraded

        adapter.reset()
        response = await adapter.fetch(window_at(t0))

        assert not adapter.degraded
        assert response.success

    async def test_attempt_timeout_is_transient(self, no_sleep, t0):
        class SlowAdapter(StaticAdapter):
            async def _fetch_once(self, window):
                await asyncio.sleep(5)
                return []

        adapter = SlowAdapter(ReportTier.REALTIME, retry_config=RetryConfig(max_retries=1), sleep=no_sleep)
        adapter.timeout = 0.01

        response = await adapter.fetch(window_at(t0))

        assert not response.success
        assert isinstance(response.error, TransientFetchError)
        assert response.error.error_type == FetchErrorType.TIMEOUT_ERROR
        assert no_sleep.await_count == 1


@pytest.mark.unit
class TestHttpClassification:

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_permanent_codes(self, status):
        assert isinstance(classify_http_error(status, '{"message": "nope"}'), PermanentFetchError)

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503])
    def test_transient_codes(self, status):
        assert isinstance(classify_http_error(status, ''), TransientFetchError)

    def test_message_and_retry_after(self):
        error = classify_http_error(429, '{"message": "slow down"}', retry_after='30')

        assert error.message == "slow down"
        assert error.error_type == FetchErrorType.RATE_LIMIT_ERROR
        assert error.details['retry_after'] == '30'

    def test_non_json_body(self):
        error = classify_http_error(401, 'Unauthorized')

        assert error.error_type == FetchErrorType.AUTHENTICATION_ERROR
        assert error.details == {'raw_response': 'Unauthorized'}


@pytest.mark.unit
class TestDecodeClient:

    def test_validate_record(self):
        record = validate_record(
            {"latitude": 35.4, "longitude": -97.5, "intensityValue": 44.5,
             "timestamp": "2024-09-24T20:30:00Z"},
            "res#0",
        )
        assert isinstance(record, DecodedRecord)
        assert record.timestamp.tzinfo is not None

    @pytest.mark.parametrize("raw", [
        {"latitude": 95.0, "longitude": -97.5, "intensityValue": 10, "timestamp": "2024-09-24T20:30:00Z"},
        {"latitude": 35.4, "longitude": -97.5, "intensityValue": -1, "timestamp": "2024-09-24T20:30:00Z"},
        {"latitude": 35.4, "longitude": -97.5, "timestamp": "2024-09-24T20:30:00Z"},
        "not a record",
    ])
    def test_invalid_records_raise(self, raw):
        with pytest.raises(DataIntegrityError) as excinfo:
            validate_record(raw, "res#3")
        assert excinfo.value.source_ref == "res#3"

    async def test_bad_records_are_discarded(self):
        client = DecodeServiceClient()
        client.request_json = AsyncMock(return_value={"records": [
            {"latitude": 35.4, "longitude": -97.5, "intensityValue": 30, "timestamp": "2024-09-24T20:30:00Z"},
            {"latitude": "north", "longitude": -97.5, "intensityValue": 30, "timestamp": "2024-09-24T20:30:00Z"},
            {"latitude": 35.5, "longitude": -97.4, "intensityValue": 40, "timestamp": "2024-09-24T20:35:00Z"},
        ]})

        records, discarded = await client.decode("mrms/latest")

        assert len(records) == 2
        assert discarded == 1
        method, url = client.request_json.await_args.args
        assert method == 'POST'
        assert url.endswith('/decode')
        assert client.request_json.await_args.kwargs['json'] == {'resource': 'mrms/latest'}

    def test_session_timeout_from_config(self):
        client = DecodeServiceClient(DecodeServiceConfig(timeout=7))

        assert client.timeout.total == 7

    def test_ground_truth_client_uses_feed_timeout(self):
        adapter = GroundTruthAdapter(GroundTruthConfig(timeout=42))

        assert adapter.http_client.timeout.total == 42

    async def test_unexpected_payload_is_permanent(self):
        client = DecodeServiceClient()
        client.request_json = AsyncMock(return_value="oops")

        with pytest.raises(PermanentFetchError):
            await client.decode("mrms/latest")


def decoded(lat, lon, mm, ts):
    return DecodedRecord(latitude=lat, longitude=lon, intensityValue=mm, timestamp=ts)


@pytest.mark.unit
class TestRealtimeAdapter:

    async def test_keeps_only_service_area(self, mock_decode_client, no_sleep, t0):
        mock_decode_client.decode.return_value = ([
            decoded(OKC_LAT, OKC_LON, 44.45, t0),
            decoded(OKC_LAT, OKC_LON + 0.05, 12.0, t0),
            decoded(36.15, -95.99, 50.0, t0),
        ], 1)
        adapter = RealtimeAdapter(mock_decode_client, sleep=no_sleep)

        response = await adapter.fetch(window_at(t0))

        assert response.success
        assert len(response.reports) == 2
        assert all(r.source_tier == ReportTier.REALTIME for r in response.reports)
        assert any(r.intensity_mm < 25 for r in response.reports)
        assert adapter.metrics['records_discarded'] == 1
        _, kwargs = mock_decode_client.decode.await_args
        assert kwargs['bbox'] == adapter.config.service_area


@pytest.mark.unit
class TestArchiveAdapter:

    def test_resource_is_following_day_file(self, mock_decode_client):
        adapter = ArchiveAdapter(mock_decode_client)

        assert adapter.resource_for_day(date(2024, 9, 24)) == (
            "https://mtarchive.geol.iastate.edu/2024/09/25/mrms/ncep/MESH_Max_1440min/"
            "MESH_Max_1440min_00.50_20240925-000000.grib2.gz"
        )

    def test_restamp_to_day(self):
        day = date(2024, 9, 24)
        utc = timezone.utc

        assert restamp_to_day(datetime(2024, 9, 24, 18, 5, tzinfo=utc), day) == \
            datetime(2024, 9, 24, 18, 5, tzinfo=utc)
        assert restamp_to_day(datetime(2024, 9, 25, 0, 0, tzinfo=utc), day) == \
            datetime(2024, 9, 24, 23, 59, 59, tzinfo=utc)
        assert restamp_to_day(datetime(2024, 9, 25, 6, 0, tzinfo=utc), day) is None
        assert restamp_to_day(datetime(2024, 9, 23, 23, 0, tzinfo=utc), day) is None

    async def test_requesting_day_returns_only_that_day(self, mock_decode_client, no_sleep):
        """Regression: day D reads the D+1 file but every report lands on D."""
        utc = timezone.utc
        mock_decode_client.decode.return_value = ([
            decoded(OKC_LAT, OKC_LON, 45.7, datetime(2024, 9, 25, 0, 0, tzinfo=utc)),
            decoded(OKC_LAT + 0.1, OKC_LON, 30.0, datetime(2024, 9, 24, 21, 15, tzinfo=utc)),
            decoded(OKC_LAT, OKC_LON, 30.0, datetime(2024, 9, 25, 12, 0, tzinfo=utc)),
        ], 0)
        adapter = ArchiveAdapter(mock_decode_client, sleep=no_sleep)

        response = await adapter.fetch_day(date(2024, 9, 24))

        assert response.success
        assert len(response.reports) == 2
        day_start = datetime(2024, 9, 24, tzinfo=utc)
        day_end = datetime(2024, 9, 24, 23, 59, 59, tzinfo=utc)
        for report in response.reports:
            assert day_start <= report.timestamp <= day_end
            assert report.source_tier == ReportTier.ARCHIVE
        resource = mock_decode_client.decode.await_args.args[0]
        assert "20240925-000000" in resource

    async def test_days_before_archive_start_are_skipped(self, mock_decode_client, no_sleep):
        adapter = ArchiveAdapter(mock_decode_client, config=ArchiveConfig(min_date="2019-10-01"),
                                 sleep=no_sleep)

        response = await adapter.fetch_day(date(2019, 9, 1))

        assert response.success
        assert response.reports == []
        mock_decode_client.decode.assert_not_awaited()

    def test_days_in_multi_day_window(self, mock_decode_client):
        window = FetchWindow(datetime(2024, 9, 22, tzinfo=timezone.utc),
                             datetime(2024, 9, 25, tzinfo=timezone.utc))

        assert ArchiveAdapter.days_in(window) == [date(2024, 9, 22), date(2024, 9, 23), date(2024, 9, 24)]


@pytest.mark.unit
class TestGroundTruthAdapter:

    @pytest.mark.parametrize("value,suffix,expected", [
        (35.47, 'S', 35.47),
        ("35.47", 'S', 35.47),
        ("35.47N", 'S', 35.47),
        ("97.52W", 'W', -97.52),
        ("-97.52", 'W', -97.52),
        ("", 'W', None),
    ])
    def test_parse_coordinate(self, value, suffix, expected):
        assert parse_coordinate(value, suffix) == expected

    def test_parse_event(self):
        adapter = GroundTruthAdapter()

        report = adapter.parse_event({
            "event_id": "1187",
            "begin_lat": "35.4676N",
            "begin_lon": "97.5164W",
            "magnitude": "1.75",
            "begin_date_time": "2024-09-24T20:30:00Z",
        })

        assert report.ground_truth
        assert report.confidence == 100
        assert report.longitude == pytest.approx(-97.5164)
        assert report.intensity_mm == pytest.approx(1.75 * MM_PER_INCH)
        assert report.source_ref == "storm_event:1187"

    async def test_malformed_events_are_discarded(self, no_sleep, t0):
        http_client = AsyncMock()
        http_client.request_json = AsyncMock(return_value={"events": [
            {"event_id": "1", "latitude": OKC_LAT, "longitude": OKC_LON,
             "magnitude": 1.75, "beginDate": t0.isoformat()},
            {"event_id": "2", "magnitude": 1.0, "beginDate": t0.isoformat()},
            {"event_id": "3", "latitude": OKC_LAT, "longitude": OKC_LON,
             "magnitude": 1.0, "beginDate": "yesterday"},
            {"event_id": "4", "latitude": OKC_LAT, "longitude": OKC_LON,
             "magnitude": 1.0, "beginDate": (t0 - timedelta(days=30)).isoformat()},
        ]})
        adapter = GroundTruthAdapter(http_client=http_client, sleep=no_sleep)
        window = FetchWindow(t0 - timedelta(days=7), t0 + timedelta(hours=1))

        response = await adapter.fetch(window)

        assert response.success
        assert [r.source_ref for r in response.reports] == ["storm_event:1"]
        assert adapter.metrics['records_discarded'] == 2
        params = http_client.request_json.await_args.kwargs['params']
        assert params['state'] == 'OK'
        assert params['eventType'] == 'Hail'
