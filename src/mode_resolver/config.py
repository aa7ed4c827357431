"""
Configuration dataclasses for the mode resolver.

This module defines the configuration structures used throughout the engine:
attribution and remote-config endpoints, static device identifiers, timing
constants, persistence and logging.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional


DEFAULT_ATTRIBUTION_BASE_URL = "https://gcdsdk.appsflyer.com"
DEFAULT_CONFIG_ENDPOINT = "https://harrvestbox.com/config.php"
DEFAULT_CUTOFF = "2025-12-21T00:00:00"


@dataclass
class AttributionConfig:
    """Install-attribution service configuration."""

    app_id: str = ""
    dev_key: str = ""
    base_url: str = DEFAULT_ATTRIBUTION_BASE_URL
    timeout_seconds: float = 10.0


@dataclass
class RemoteConfigConfig:
    """Remote decision endpoint configuration."""

    endpoint: str = DEFAULT_CONFIG_ENDPOINT
    timeout_seconds: float = 10.0


@dataclass
class DeviceConfig:
    """Static device and app identifiers posted to the config endpoint."""

    platform: str = "iOS"
    bundle_id: str = "com.helpharvestb.HarvestBox"
    firebase_project_id: Optional[str] = None
    language: str = "en"
    tracking_id: Optional[str] = None  # generated and cached when absent


@dataclass
class TimingConfig:
    """Delays and cooldowns, all in seconds except the cutoff."""

    deep_link_wait_seconds: float = 5.0
    date_gate_delay_seconds: float = 1.0
    temp_url_delay_seconds: float = 2.0
    attribution_combine_seconds: float = 10.0
    permission_cooldown_seconds: float = 259200.0
    connectivity_interval_seconds: float = 5.0
    cutoff: str = DEFAULT_CUTOFF  # ISO 8601; naive values are local time

    def cutoff_datetime(self) -> datetime:
        """Return the cutoff as an aware datetime."""
        return datetime.fromisoformat(self.cutoff).astimezone()


@dataclass
class PersistenceConfig:
    """Persistence and state storage configuration."""

    state_file_path: Path
    hmac_secret: str


@dataclass
class LoggingConfig:
    """Logging and audit configuration."""

    level: str = "info"
    audit_mode: bool = False
    audit_signing_key: Optional[str] = None
    output_format: str = "text"  # 'json', 'text', 'both'


@dataclass
class SystemConfig:
    """Main system configuration combining all sub-configurations."""

    attribution: AttributionConfig
    remote_config: RemoteConfigConfig
    device: DeviceConfig
    persistence: PersistenceConfig
    timing: TimingConfig = field(default_factory=TimingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    connectivity_probe_url: Optional[str] = None
    simulation_mode: bool = False
    startup_self_test: bool = False
