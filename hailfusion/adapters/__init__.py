"""
Source adapters: one per observation tier.
"""

from .base import (
    CircuitBreaker, FetchResponse, FetchWindow, JSONHttpClient, SourceAdapter,
    classify_http_error
)
from .decode import DecodedRecord, DecodeServiceClient
from .realtime import RealtimeAdapter
from .archive import ArchiveAdapter, restamp_to_day
from .ground_truth import GroundTruthAdapter, parse_coordinate

__all__ = [
    'CircuitBreaker',
    'FetchResponse',
    'FetchWindow',
    'JSONHttpClient',
    'SourceAdapter',
    'classify_http_error',
    'DecodedRecord',
    'DecodeServiceClient',
    'RealtimeAdapter',
    'ArchiveAdapter',
    'restamp_to_day',
    'GroundTruthAdapter',
    'parse_coordinate',
]
