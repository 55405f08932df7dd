"""
Tier 2: daily archive of 24-hour MESH maxima.

The archive file stamped D+1 00:00 UTC carries the 24-hour maxima that
accumulated over day D. Asking for day D therefore reads the D+1 resource
and re-stamps every record into D.
"""

import logging
from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import List, Optional

from ..config import ArchiveConfig, RetryConfig
from ..models import BoundingBox, Report, ReportTier
from .base import FetchWindow, FetchResponse, SourceAdapter
from .decode import DecodeServiceClient, DecodedRecord

logger = logging.getLogger(__name__)

END_OF_DAY = dt_time(23, 59, 59)


def day_start(day: date) -> datetime:
    return datetime.combine(day, dt_time.min, tzinfo=timezone.utc)


def archive_file_day(day: date) -> date:
    """Day whose 00:00 file holds the maxima for `day`."""
    return day + timedelta(days=1)


def restamp_to_day(timestamp: datetime, day: date) -> Optional[datetime]:
    """Map a record time into `day`, or None if it cannot belong to it.

    Times already on `day` keep their time of day. The file's own valid time,
    D+1 00:00, is clamped to D 23:59:59. Anything else lies outside the
    accumulation period and is dropped.
    """
    start = day_start(day)
    end = start + timedelta(days=1)
    if start <= timestamp < end:
        return timestamp
    if timestamp == end:
        return datetime.combine(day, END_OF_DAY, tzinfo=timezone.utc)
    return None


class ArchiveAdapter(SourceAdapter):
    """Reads the D+1 archive file for each requested day D."""

    tier = ReportTier.ARCHIVE

    def __init__(self, decode_client: DecodeServiceClient,
                 config: Optional[ArchiveConfig] = None,
                 retry_config: Optional[RetryConfig] = None,
                 area: Optional[BoundingBox] = None, **kwargs):
        self.config = config or ArchiveConfig()
        super().__init__(timeout=self.config.timeout, retry_config=retry_config, **kwargs)
        self.decode_client = decode_client
        self.area = area
        self.min_date = date.fromisoformat(self.config.min_date)

    def resource_for_day(self, day: date) -> str:
        """Archive URL holding day D's maxima (the D+1 00:00 file)."""
        file_day = archive_file_day(day)
        stamp = file_day.strftime('%Y%m%d')
        product = self.config.product
        return (
            f"{self.config.base_url.rstrip('/')}/{file_day:%Y/%m/%d}/mrms/ncep/"
            f"{product}/{product}_00.50_{stamp}-000000.grib2.gz"
        )

    @staticmethod
    def days_in(window: FetchWindow) -> List[date]:
        last = (window.end - timedelta(microseconds=1)).date() if window.end > window.start else window.start.date()
        days = []
        current = window.start.date()
        while current <= last:
            days.append(current)
            current += timedelta(days=1)
        return days

    def _to_report(self, record: DecodedRecord, day: date, resource: str) -> Optional[Report]:
        timestamp = restamp_to_day(record.timestamp, day)
        if timestamp is None:
            logger.debug(f"[archive] dropping record at {record.timestamp} outside {day}")
            return None
        if self.area is not None and not self.area.contains(record.latitude, record.longitude):
            return None
        return Report.create(
            ReportTier.ARCHIVE,
            latitude=record.latitude,
            longitude=record.longitude,
            intensity_mm=record.intensityValue,
            timestamp=timestamp,
            source_ref=resource,
        )

    async def _fetch_once(self, window: FetchWindow) -> List[Report]:
        reports = []
        for day in self.days_in(window):
            if day < self.min_date:
                logger.warning(f"[archive] no archive before {self.min_date}, skipping {day}")
                continue
            resource = self.resource_for_day(day)
            records, discarded = await self.decode_client.decode(resource, bbox=self.area)
            self.metrics['records_discarded'] += discarded
            for record in records:
                report = self._to_report(record, day, resource)
                if report is not None:
                    reports.append(report)
        return reports

    async def fetch_day(self, day: date) -> FetchResponse:
        """Reports whose event time falls on `day`."""
        return await self.fetch(FetchWindow.for_day(day))

    async def close(self):
        await self.decode_client.close_session()
