"""
HailFusion - multi-tier hail intelligence core.

Fuses realtime radar estimates, the daily archive and verified storm reports
into storm events, intensity contours and a calibrated accuracy history.
"""

__version__ = "1.0.0"

from .config import ConfigManager, SystemConfig, load_config
from .errors import (
    HailFusionError, FetchError, TransientFetchError, PermanentFetchError,
    CircuitOpenError, DataIntegrityError, InsufficientCalibrationDataError,
    ReconciliationError, ContourGenerationError, StoreError, ImmutableFieldError
)
from .models import (
    BoundingBox, CalibrationRecord, ContourBand, ContourSet, EventStatus,
    Report, ReportTier, StormEvent, TerritoryAggregate
)
from .service import HailIntelligenceService

__all__ = [
    'ConfigManager',
    'SystemConfig',
    'load_config',
    'HailFusionError',
    'FetchError',
    'TransientFetchError',
    'PermanentFetchError',
    'CircuitOpenError',
    'DataIntegrityError',
    'InsufficientCalibrationDataError',
    'ReconciliationError',
    'ContourGenerationError',
    'StoreError',
    'ImmutableFieldError',
    'BoundingBox',
    'CalibrationRecord',
    'ContourBand',
    'ContourSet',
    'EventStatus',
    'Report',
    'ReportTier',
    'StormEvent',
    'TerritoryAggregate',
    'HailIntelligenceService',
]
