"""
Client for the external decode service.

The decode service turns a raw grid or archive resource reference into point
records of the form `{latitude, longitude, intensityValue, timestamp}` with
intensity in millimeters. Each record is validated on its own; a malformed
record is logged with its source reference and dropped while the rest of the
batch goes through.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..config import DecodeServiceConfig
from ..errors import DataIntegrityError, FetchErrorType, PermanentFetchError
from ..models import BoundingBox, ensure_utc
from .base import JSONHttpClient

logger = logging.getLogger(__name__)


class DecodedRecord(BaseModel):
    """One point record returned by the decode service."""
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    intensityValue: float = Field(ge=0)
    timestamp: datetime

    @field_validator('timestamp')
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


def validate_record(raw: Any, source_ref: str) -> DecodedRecord:
    """Validate one raw record or raise DataIntegrityError."""
    if not isinstance(raw, dict):
        raise DataIntegrityError(
            f"Decoded record is not an object: {raw!r}", source_ref=source_ref
        )
    try:
        return DecodedRecord.model_validate(raw)
    except ValidationError as e:
        raise DataIntegrityError(
            f"Invalid decoded record: {e.error_count()} error(s)",
            source_ref=source_ref,
            payload=raw,
        ) from e


class DecodeServiceClient(JSONHttpClient):
    """POSTs resource references to `{base_url}/decode`."""

    def __init__(self, config: Optional[DecodeServiceConfig] = None):
        self.config = config or DecodeServiceConfig()
        super().__init__(api_token=self.config.api_token, timeout=self.config.timeout)

    def _build_url(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/decode"

    @staticmethod
    def _extract_records(data: Any) -> List[Any]:
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            records = data.get('records', data.get('data'))
            if isinstance(records, list):
                return records
        raise PermanentFetchError(
            "Decode service returned an unexpected payload shape",
            FetchErrorType.VALIDATION_ERROR,
            details={'payload_type': type(data).__name__}
        )

    async def decode(self, resource: str,
                     bbox: Optional[BoundingBox] = None) -> Tuple[List[DecodedRecord], int]:
        """Decode one resource. Returns (valid records, discarded count)."""
        body: Dict[str, Any] = {'resource': resource}
        if bbox is not None:
            body['bbox'] = bbox.to_dict()

        data = await self.request_json('POST', self._build_url(), json=body)
        raw_records = self._extract_records(data)

        records: List[DecodedRecord] = []
        discarded = 0
        for index, raw in enumerate(raw_records):
            try:
                records.append(validate_record(raw, f"{resource}#{index}"))
            except DataIntegrityError as e:
                discarded += 1
                logger.warning(f"Discarding decoded record {e.source_ref}: {e} payload={e.payload}")

        logger.debug(f"Decoded {len(records)} records from {resource} ({discarded} discarded)")
        return records, discarded
