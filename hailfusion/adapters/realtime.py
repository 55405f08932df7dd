"""Tier 1: realtime MESH feed restricted to the service area."""

import logging
from typing import List, Optional

from ..config import RealtimeConfig, RetryConfig
from ..models import Report, ReportTier
from .base import FetchWindow, SourceAdapter
from .decode import DecodeServiceClient

logger = logging.getLogger(__name__)


class RealtimeAdapter(SourceAdapter):
    """Asks the decode service for the latest grid and keeps in-area points.

    Sub-threshold reports are returned as well; alerting filters later.
    """

    tier = ReportTier.REALTIME

    def __init__(self, decode_client: DecodeServiceClient,
                 config: Optional[RealtimeConfig] = None,
                 retry_config: Optional[RetryConfig] = None, **kwargs):
        self.config = config or RealtimeConfig()
        super().__init__(timeout=self.config.timeout, retry_config=retry_config, **kwargs)
        self.decode_client = decode_client

    async def _fetch_once(self, window: FetchWindow) -> List[Report]:
        area = self.config.service_area
        records, discarded = await self.decode_client.decode(self.config.resource, bbox=area)
        self.metrics['records_discarded'] += discarded

        reports = []
        for record in records:
            if not area.contains(record.latitude, record.longitude):
                continue
            reports.append(Report.create(
                ReportTier.REALTIME,
                latitude=record.latitude,
                longitude=record.longitude,
                intensity_mm=record.intensityValue,
                timestamp=record.timestamp,
                source_ref=self.config.resource,
            ))
        return reports

    async def close(self):
        await self.decode_client.close_session()
