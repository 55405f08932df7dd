"""
Configuration management for the hail intelligence core.

This module handles the JSON config file, environment variable overrides and
validation. Every numeric threshold used by the engines lives here so it can
be tuned without code changes. A `SystemConfig` is built once at startup and
passed explicitly to whatever needs it.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields, asdict, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import BoundingBox

logger = logging.getLogger(__name__)

TIER_LABELS = ('realtime', 'archive', 'ground_truth')


@dataclass
class RetryConfig:
    """Retry and circuit breaker settings shared by the source adapters."""
    max_retries: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 4.0
    failure_threshold: int = 5
    cooldown_seconds: float = 900.0


@dataclass
class DecodeServiceConfig:
    """External decode service that turns grid resources into point records."""
    base_url: str = "http://localhost:8090"
    api_token: Optional[str] = None
    timeout: int = 60


@dataclass
class RealtimeConfig:
    """Tier 1: realtime MESH feed."""
    resource: str = "mrms/ncep/MESH_Max_60min/latest"
    timeout: int = 15

    # Service area (Oklahoma City metro)
    min_latitude: float = 35.1
    max_latitude: float = 35.7
    min_longitude: float = -97.8
    max_longitude: float = -97.1

    # Cadence
    active_interval_seconds: int = 120
    idle_interval_seconds: int = 600
    freshness_sla_seconds: int = 600

    @property
    def service_area(self) -> BoundingBox:
        return BoundingBox(self.min_latitude, self.max_latitude,
                           self.min_longitude, self.max_longitude)


@dataclass
class ArchiveConfig:
    """Tier 2: daily archive of 24-hour MESH maxima."""
    base_url: str = "https://mtarchive.geol.iastate.edu"
    product: str = "MESH_Max_1440min"
    timeout: int = 120
    lookback_days: int = 3
    min_date: str = "2019-10-01"
    freshness_sla_hours: int = 48


@dataclass
class GroundTruthConfig:
    """Tier 3: verified storm event reports."""
    base_url: str = "http://localhost:3001/api/storm-events"
    state: str = "OK"
    event_type: str = "Hail"
    timeout: int = 60
    interval_days: int = 7
    freshness_sla_days: int = 8


@dataclass
class ReconciliationConfig:
    """Matching, deduplication, confidence and alerting thresholds."""
    match_buffer_deg: float = 0.1
    match_grace_hours: float = 6.0
    inactivity_hours: float = 6.0
    dedupe_distance_m: float = 500.0
    dedupe_window_minutes: float = 30.0

    # Tier 1 confidence: linear in intensity
    realtime_min_confidence: float = 60.0
    realtime_max_confidence: float = 70.0
    realtime_scale_min_inches: float = 1.0
    realtime_scale_max_inches: float = 2.0

    # Tier 2 confidence: scaled by corroborating reports
    archive_base_confidence: float = 70.0
    archive_max_confidence: float = 85.0
    archive_corroboration_bonus: float = 5.0
    corroboration_radius_km: float = 8.0
    corroboration_window_minutes: float = 60.0

    alert_threshold_mm: float = 25.0


@dataclass
class ContourConfig:
    """Contour band cutoffs and spatial radii."""
    band_thresholds_inches: List[float] = field(default_factory=lambda: [0.75, 1.0, 1.5, 2.0])
    circle_radius_m: float = 2000.0
    uncertainty_radius_m: float = 1500.0
    circle_quad_segs: int = 16


@dataclass
class CalibrationConfig:
    """Weekly accuracy calibration."""
    window_days: int = 7
    min_ground_truth_samples: int = 1
    intensity_tolerance_inches: float = 0.5
    target_f1: float = 0.7
    weight_step: float = 0.05
    weight_floor: float = 0.5
    weight_ceiling: float = 1.0
    trailing_weeks: int = 4
    territory_id: str = "service_area"
    area_cell_deg: float = 1.0


@dataclass
class TerritoryConfig:
    """Heat-map grid projection."""
    grid_size_deg: float = 0.01


@dataclass
class SchedulerConfig:
    """Which tiers run, and how the lanes back off and shut down."""
    enabled_tiers: List[str] = field(default_factory=lambda: list(TIER_LABELS))
    failure_backoff_seconds: float = 60.0
    shutdown_grace_seconds: float = 10.0


@dataclass
class StoreConfig:
    """Intelligence store backend."""
    backend: str = "memory"
    sqlite_path: str = "data/hailfusion.db"


@dataclass
class SystemConfig:
    """Main system configuration."""
    retry: RetryConfig = field(default_factory=RetryConfig)
    decode: DecodeServiceConfig = field(default_factory=DecodeServiceConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    ground_truth: GroundTruthConfig = field(default_factory=GroundTruthConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    contours: ContourConfig = field(default_factory=ContourConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    territory: TerritoryConfig = field(default_factory=TerritoryConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)

    # System-wide settings
    debug: bool = False
    environment: str = "development"
    version: str = "1.0.0"
    log_level: str = "INFO"
    log_file: Optional[str] = None


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes', 'on')


class ConfigManager:
    """Configuration manager for handling the config file and environment variables."""

    def __init__(self, config_file: Optional[Path] = None):
        self.config_file = Path(config_file) if config_file else Path("hailfusion.json")
        self.config = SystemConfig()
        self._load_config()

    def _load_config(self):
        """Load configuration from config file and environment variables."""
        if self.config_file.exists():
            with open(self.config_file, 'r') as f:
                config_data = json.load(f)
            self._update_config_from_dict(config_data)
            logger.info(f"Loaded configuration from {self.config_file}")

        self._load_from_environment()
        self._validate_config()

    def _update_config_from_dict(self, config_data: Dict[str, Any]):
        """Update configuration from a nested dictionary."""
        for section in fields(self.config):
            if section.name not in config_data:
                continue
            current = getattr(self.config, section.name)
            value = config_data[section.name]
            if is_dataclass(current) and isinstance(value, dict):
                known = {f.name for f in fields(current)}
                for key, item in value.items():
                    if key in known:
                        setattr(current, key, item)
                    else:
                        logger.warning(f"Ignoring unknown config key {section.name}.{key}")
            else:
                setattr(self.config, section.name, value)

    def _load_from_environment(self):
        """Load configuration from environment variables."""
        cfg = self.config

        # Decode service
        cfg.decode.base_url = os.getenv('DECODE_SERVICE_URL', cfg.decode.base_url)
        cfg.decode.api_token = os.getenv('DECODE_SERVICE_TOKEN', cfg.decode.api_token)
        cfg.decode.timeout = int(os.getenv('DECODE_SERVICE_TIMEOUT', str(cfg.decode.timeout)))

        # Sources
        cfg.archive.base_url = os.getenv('HAILFUSION_ARCHIVE_URL', cfg.archive.base_url)
        cfg.ground_truth.base_url = os.getenv('HAILFUSION_GROUND_TRUTH_URL', cfg.ground_truth.base_url)
        cfg.ground_truth.state = os.getenv('HAILFUSION_GROUND_TRUTH_STATE', cfg.ground_truth.state)

        # Retry policy
        cfg.retry.max_retries = int(os.getenv('HAILFUSION_MAX_RETRIES', str(cfg.retry.max_retries)))
        cfg.retry.failure_threshold = int(
            os.getenv('HAILFUSION_FAILURE_THRESHOLD', str(cfg.retry.failure_threshold)))

        # Alerting
        cfg.reconciliation.alert_threshold_mm = float(
            os.getenv('HAILFUSION_ALERT_THRESHOLD_MM', str(cfg.reconciliation.alert_threshold_mm)))

        # Scheduler
        tiers = os.getenv('HAILFUSION_ENABLED_TIERS')
        if tiers:
            cfg.scheduler.enabled_tiers = [t.strip() for t in tiers.split(',') if t.strip()]

        # Store
        cfg.store.backend = os.getenv('HAILFUSION_STORE', cfg.store.backend)
        cfg.store.sqlite_path = os.getenv('HAILFUSION_DB_PATH', cfg.store.sqlite_path)

        # System
        cfg.debug = _env_bool('DEBUG', cfg.debug)
        cfg.environment = os.getenv('ENVIRONMENT', cfg.environment)
        cfg.log_level = os.getenv('LOG_LEVEL', cfg.log_level)
        cfg.log_file = os.getenv('HAILFUSION_LOG_FILE', cfg.log_file)

    def _validate_config(self):
        """Validate configuration settings."""
        cfg = self.config
        errors = []

        if cfg.retry.max_retries < 0:
            errors.append("retry.max_retries must be non-negative")
        if cfg.retry.failure_threshold < 1:
            errors.append("retry.failure_threshold must be at least 1")
        if cfg.retry.backoff_base_seconds < 0:
            errors.append("retry.backoff_base_seconds must be non-negative")

        for name in ('realtime', 'archive', 'ground_truth'):
            if getattr(cfg, name).timeout <= 0:
                errors.append(f"{name}.timeout must be positive")

        rt = cfg.realtime
        if not (-90 <= rt.min_latitude <= rt.max_latitude <= 90):
            errors.append("Invalid service area latitudes")
        if not (-180 <= rt.min_longitude <= rt.max_longitude <= 180):
            errors.append("Invalid service area longitudes")

        rec = cfg.reconciliation
        if rec.match_buffer_deg < 0 or rec.dedupe_distance_m <= 0:
            errors.append("Reconciliation distances must be positive")
        if not (0 <= rec.realtime_min_confidence <= rec.realtime_max_confidence <= 100):
            errors.append("Invalid realtime confidence range")
        if not (0 <= rec.archive_base_confidence <= rec.archive_max_confidence <= 100):
            errors.append("Invalid archive confidence range")

        thresholds = cfg.contours.band_thresholds_inches
        if not thresholds or sorted(thresholds) != list(thresholds) or len(set(thresholds)) != len(thresholds):
            errors.append("contours.band_thresholds_inches must be strictly ascending")
        if cfg.contours.circle_radius_m <= 0 or cfg.contours.uncertainty_radius_m < 0:
            errors.append("Invalid contour radii")

        cal = cfg.calibration
        if not (0 < cal.weight_floor <= cal.weight_ceiling <= 1.0):
            errors.append("Calibration weights must satisfy 0 < floor <= ceiling <= 1")
        if cal.weight_step <= 0:
            errors.append("calibration.weight_step must be positive")
        if cal.trailing_weeks < 1:
            errors.append("calibration.trailing_weeks must be at least 1")

        unknown = [t for t in cfg.scheduler.enabled_tiers if t not in TIER_LABELS]
        if unknown:
            errors.append(f"Unknown tiers in scheduler.enabled_tiers: {', '.join(unknown)}")

        if cfg.store.backend not in ('memory', 'sqlite'):
            errors.append(f"Unknown store backend: {cfg.store.backend}")

        if errors:
            raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")

        logger.debug("Configuration validation passed")

    def get_system_config(self) -> SystemConfig:
        """Get system configuration."""
        return self.config

    def save_config(self):
        """Save current configuration to file."""
        with open(self.config_file, 'w') as f:
            json.dump(asdict(self.config), f, indent=2)
        logger.info(f"Configuration saved to {self.config_file}")

    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.config.environment == 'production'


def load_config(config_file: Optional[Path] = None) -> SystemConfig:
    """Build a validated configuration from file and environment."""
    return ConfigManager(config_file).get_system_config()
