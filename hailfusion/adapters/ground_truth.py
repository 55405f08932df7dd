"""Tier 3: verified storm event reports used as calibration reference."""

import logging
import re
from typing import Any, Dict, List, Optional

from ..config import GroundTruthConfig, RetryConfig
from ..errors import DataIntegrityError
from ..models import MM_PER_INCH, Report, ReportTier, parse_timestamp
from .base import FetchWindow, JSONHttpClient, SourceAdapter

logger = logging.getLogger(__name__)

_NUMBER = re.compile(r'[^0-9.\-]')


def parse_coordinate(value: Any, negative_suffix: str) -> Optional[float]:
    """Parse 35.47, '35.47', '35.47N' or '97.52W' style coordinates."""
    if value is None or value == '':
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().upper()
    cleaned = _NUMBER.sub('', text)
    if not cleaned:
        return None
    number = float(cleaned)
    if text.endswith(negative_suffix) and number > 0:
        number = -number
    return number


def _first(event: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = event.get(key)
        if value not in (None, ''):
            return value
    return None


class GroundTruthAdapter(SourceAdapter):
    """Pulls hail reports from the storm events feed for a date range."""

    tier = ReportTier.GROUND_TRUTH

    def __init__(self, config: Optional[GroundTruthConfig] = None,
                 retry_config: Optional[RetryConfig] = None,
                 http_client: Optional[JSONHttpClient] = None, **kwargs):
        self.config = config or GroundTruthConfig()
        super().__init__(timeout=self.config.timeout, retry_config=retry_config, **kwargs)
        self.http_client = http_client or JSONHttpClient(timeout=self.config.timeout)

    def _build_params(self, window: FetchWindow) -> Dict[str, str]:
        return {
            'startDate': window.start.date().isoformat(),
            'endDate': window.end.date().isoformat(),
            'state': self.config.state,
            'eventType': self.config.event_type,
        }

    def parse_event(self, event: Any) -> Report:
        """Normalize one storm event; raises DataIntegrityError if unusable."""
        if not isinstance(event, dict):
            raise DataIntegrityError(f"Storm event is not an object: {event!r}")

        event_id = _first(event, 'event_id', 'eventId', 'EVENT_ID')
        source_ref = f"storm_event:{event_id}" if event_id else None
        try:
            latitude = parse_coordinate(_first(event, 'begin_lat', 'latitude', 'BEGIN_LAT'), 'S')
            longitude = parse_coordinate(_first(event, 'begin_lon', 'longitude', 'BEGIN_LON'), 'W')
            magnitude = float(_first(event, 'magnitude', 'MAGNITUDE'))
            timestamp = parse_timestamp(_first(event, 'begin_date_time', 'beginDate', 'BEGIN_DATE_TIME'))
        except (TypeError, ValueError) as e:
            raise DataIntegrityError(f"Malformed storm event: {e}", source_ref, event) from e

        if latitude is None or longitude is None:
            raise DataIntegrityError("Storm event has no coordinates", source_ref, event)
        if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
            raise DataIntegrityError("Storm event coordinates out of range", source_ref, event)
        if magnitude <= 0:
            raise DataIntegrityError("Storm event has no hail size", source_ref, event)

        return Report.create(
            ReportTier.GROUND_TRUTH,
            latitude=latitude,
            longitude=longitude,
            intensity_mm=magnitude * MM_PER_INCH,
            timestamp=timestamp,
            source_ref=source_ref,
            ground_truth=True,
        )

    async def _fetch_once(self, window: FetchWindow) -> List[Report]:
        data = await self.http_client.request_json(
            'GET', self.config.base_url, params=self._build_params(window)
        )
        events = data.get('events', []) if isinstance(data, dict) else (data or [])

        reports = []
        for event in events:
            try:
                report = self.parse_event(event)
            except DataIntegrityError as e:
                self.metrics['records_discarded'] += 1
                logger.warning(f"[ground_truth] discarding {e.source_ref or 'event'}: {e} payload={e.payload}")
                continue
            if window.contains(report.timestamp):
                reports.append(report)
        return reports

    async def close(self):
        await self.http_client.close_session()
