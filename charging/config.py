"""
Service Configuration

Loads and validates configuration from config.yaml and credentials from
secrets.yaml. Missing files or sections fall back to defaults.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


@dataclass
class ZoneConfig:
    """A pricing zone and the ENTSO-E bidding-zone code it maps to."""

    area_code: str = "10YNL----------L"


@dataclass
class PricingConfig:
    """Day-ahead price ingestion settings."""

    api_url: str = "https://web-api.tp.entsoe.eu/api"
    timezone: str = "Europe/Amsterdam"
    fetch_time: str = "01:10"  # local time of the daily refresh
    timeout_seconds: float = 30.0
    default_zone: str = "NL"
    zones: Dict[str, ZoneConfig] = field(default_factory=lambda: {"NL": ZoneConfig()})


@dataclass
class FleetConfig:
    """Tesla Fleet API client settings."""

    api_base: str = "https://fleet-api.prd.eu.vn.cloud.tesla.com"
    token_url: str = "https://auth.tesla.com/oauth2/v3/token"
    redirect_uri: str = "https://teslasmartchargeapp.web.app/callback"
    timeout_seconds: float = 10.0
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    shadow_mode: bool = False  # Log commands, don't send them


@dataclass
class OAuthConfig:
    """Where the OAuth redirect handler sends the authorization code."""

    app_redirect_url: str = "teslasmartchargeapp://auth/callback"


@dataclass
class StoreConfig:
    backend: str = "sqlite"
    path: str = "data/smartcharge.db"


@dataclass
class SchedulerConfig:
    enabled: bool = True
    check_interval_seconds: int = 30


@dataclass
class Secrets:
    """Credentials from secrets.yaml. Never logged."""

    entsoe_api_key: str = ""
    tesla_client_id: str = ""
    tesla_client_secret: str = ""
    api_tokens: Dict[str, str] = field(default_factory=dict)  # bearer token -> user id

    def __repr__(self) -> str:
        return (
            f"Secrets(entsoe_api_key={'set' if self.entsoe_api_key else 'unset'}, "
            f"tesla_client_id={'set' if self.tesla_client_id else 'unset'}, "
            f"api_tokens={len(self.api_tokens)})"
        )


@dataclass
class AppConfig:
    """Main service configuration."""

    pricing: PricingConfig = field(default_factory=PricingConfig)
    fleet: FleetConfig = field(default_factory=FleetConfig)
    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    secrets: Secrets = field(default_factory=Secrets)


def _load_yaml(path: str) -> Optional[Dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return None


def parse_fetch_time(value: str) -> tuple[int, int]:
    """Parse "HH:MM" into (hour, minute)."""
    match = _TIME_RE.match(str(value).strip())
    if not match:
        raise ValueError(f"pricing.fetch_time must be HH:MM, got {value!r}")
    return int(match.group(1)), int(match.group(2))


def _parse_pricing(data: Dict[str, Any]) -> PricingConfig:
    zones_data = data.get("zones")
    if zones_data:
        zones = {
            str(name): ZoneConfig(area_code=str((zone or {}).get("area_code", "")))
            for name, zone in zones_data.items()
        }
    else:
        zones = {"NL": ZoneConfig()}

    for name, zone in zones.items():
        if not zone.area_code:
            raise ValueError(f"pricing.zones.{name}.area_code is required")

    pricing = PricingConfig(
        api_url=data.get("api_url", PricingConfig.api_url),
        timezone=data.get("timezone", PricingConfig.timezone),
        fetch_time=str(data.get("fetch_time", PricingConfig.fetch_time)),
        timeout_seconds=float(data.get("timeout_seconds", PricingConfig.timeout_seconds)),
        default_zone=str(data.get("default_zone", next(iter(zones)))),
        zones=zones,
    )
    parse_fetch_time(pricing.fetch_time)
    if pricing.timeout_seconds <= 0:
        raise ValueError("pricing.timeout_seconds must be > 0")
    if pricing.default_zone not in zones:
        raise ValueError(f"pricing.default_zone {pricing.default_zone!r} is not in pricing.zones")
    return pricing


def _parse_fleet(data: Dict[str, Any]) -> FleetConfig:
    fleet = FleetConfig(
        api_base=data.get("api_base", FleetConfig.api_base).rstrip("/"),
        token_url=data.get("token_url", FleetConfig.token_url),
        redirect_uri=data.get("redirect_uri", FleetConfig.redirect_uri),
        timeout_seconds=float(data.get("timeout_seconds", FleetConfig.timeout_seconds)),
        retry_attempts=int(data.get("retry_attempts", FleetConfig.retry_attempts)),
        retry_base_delay_seconds=float(
            data.get("retry_base_delay_seconds", FleetConfig.retry_base_delay_seconds)
        ),
        shadow_mode=bool(data.get("shadow_mode", FleetConfig.shadow_mode)),
    )
    if fleet.timeout_seconds <= 0:
        raise ValueError("fleet.timeout_seconds must be > 0")
    if fleet.retry_attempts < 1:
        raise ValueError("fleet.retry_attempts must be >= 1")
    if fleet.retry_base_delay_seconds < 0:
        raise ValueError("fleet.retry_base_delay_seconds must be >= 0")
    return fleet


def load_secrets(secrets_path: str = "secrets.yaml") -> Secrets:
    data = _load_yaml(secrets_path)
    if data is None:
        logger.warning("Secrets file not found at %s, running without credentials", secrets_path)
        return Secrets()

    entsoe = data.get("entsoe") or {}
    tesla = data.get("tesla") or {}
    tokens = data.get("api_tokens") or {}
    return Secrets(
        entsoe_api_key=str(entsoe.get("api_key", "")),
        tesla_client_id=str(tesla.get("client_id", "")),
        tesla_client_secret=str(tesla.get("client_secret", "")),
        api_tokens={str(token): str(user_id) for token, user_id in tokens.items()},
    )


def load_config(config_path: str = "config.yaml", secrets_path: str = "secrets.yaml") -> AppConfig:
    """
    Load service configuration from config.yaml and secrets.yaml.

    Falls back to defaults if the file or a section is missing.

    Raises:
        ValueError: a present value is invalid (message names the key)
    """
    secrets = load_secrets(secrets_path)

    data = _load_yaml(config_path)
    if data is None:
        logger.warning("Config file not found at %s, using defaults", config_path)
        return AppConfig(secrets=secrets)

    for section in ("pricing", "fleet", "oauth", "store", "scheduler"):
        if section not in data:
            logger.info("No %s section in config, using defaults", section)

    oauth_data = data.get("oauth") or {}
    store_data = data.get("store") or {}
    scheduler_data = data.get("scheduler") or {}

    store = StoreConfig(
        backend=str(store_data.get("backend", StoreConfig.backend)),
        path=str(store_data.get("path", StoreConfig.path)),
    )
    if store.backend not in ("memory", "sqlite"):
        raise ValueError(f"store.backend must be 'memory' or 'sqlite', got {store.backend!r}")

    scheduler = SchedulerConfig(
        enabled=bool(scheduler_data.get("enabled", SchedulerConfig.enabled)),
        check_interval_seconds=int(
            scheduler_data.get("check_interval_seconds", SchedulerConfig.check_interval_seconds)
        ),
    )
    if scheduler.check_interval_seconds <= 0:
        raise ValueError("scheduler.check_interval_seconds must be > 0")

    return AppConfig(
        pricing=_parse_pricing(data.get("pricing") or {}),
        fleet=_parse_fleet(data.get("fleet") or {}),
        oauth=OAuthConfig(
            app_redirect_url=oauth_data.get("app_redirect_url", OAuthConfig.app_redirect_url)
        ),
        store=store,
        scheduler=scheduler,
        secrets=secrets,
    )
