import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env(key: str, default: str | None = None, required: bool = False) -> str:
    val = os.getenv(key, default)
    if required and not val:
        raise RuntimeError(f"Missing required env var: {key}")
    return val


def _env_float(key: str, default: float) -> float:
    return float(os.getenv(key, str(default)))


def _env_int(key: str, default: int) -> int:
    return int(os.getenv(key, str(default)))


def _env_bool(key: str, default: bool = False) -> bool:
    val = os.getenv(key, str(default)).lower()
    return val in ("true", "1", "yes")


@dataclass(frozen=True)
class ForecastConfig:
    # Days of hourly energy history fed to the load/solar forecaster.
    history_days: int = _env_int("FORECAST_HISTORY_DAYS", 3)
    horizon_hours: int = _env_int("FORECAST_HORIZON_HOURS", 24)
    # Flat hourly load used when fewer than 2 days of history exist.
    default_load_kwh: float = _env_float("FORECAST_DEFAULT_LOAD_KWH", 1.0)
    # How far ahead the policy looks for cheaper/pricier hours. Deficits or
    # capacity crossings beyond the window are ignored by the policy.
    future_price_window_hours: int = _env_int("FUTURE_PRICE_WINDOW_HOURS", 24)
    # Days of energy history to backfill when a site has none stored.
    backfill_days: int = _env_int("HISTORY_BACKFILL_DAYS", 5)


@dataclass(frozen=True)
class PriceCacheConfig:
    current_ttl_s: int = _env_int("CURRENT_PRICE_TTL_SECONDS", 300)
    future_ttl_s: int = _env_int("FUTURE_PRICE_TTL_SECONDS", 900)


@dataclass(frozen=True)
class TariffConfig:
    name: str = _env("TARIFF_NAME", "tou")
    csv_path: str = _env("TARIFF_CSV", "tariff.csv")


@dataclass(frozen=True)
class SimulatedESSConfig:
    capacity_kwh: float = _env_float("SIM_BATTERY_CAPACITY_KWH", 13.5)
    max_charge_kw: float = _env_float("SIM_BATTERY_MAX_CHARGE_KW", 5.0)
    max_discharge_kw: float = _env_float("SIM_BATTERY_MAX_DISCHARGE_KW", 5.0)
    initial_soc: float = _env_float("SIM_BATTERY_INITIAL_SOC", 50.0)
    home_kw: float = _env_float("SIM_HOME_KW", 1.0)
    solar_peak_kw: float = _env_float("SIM_SOLAR_PEAK_KW", 5.0)


@dataclass(frozen=True)
class SystemConfig:
    scheduler_interval_s: int = _env_int("SCHEDULER_INTERVAL_SECONDS", 900)
    cycle_timeout_s: float = _env_float("CYCLE_TIMEOUT_SECONDS", 120.0)
    log_level: str = _env("LOG_LEVEL", "INFO")
    db_path: str = _env("DB_PATH", "rate_arb.db")
    timezone: str = _env("TIMEZONE", "America/Los_Angeles")
    # Global override: when set, no site ever has its modes changed.
    dry_run: bool = _env_bool("DRY_RUN", False)
    # Comma-separated sites run on the simulated ESS in addition to any
    # site with stored settings.
    site_ids: str = _env("SITE_IDS", "home")
    # Latest results, preview and savings are written here after each batch.
    status_path: str = _env("STATUS_PATH", "rate_arb_status.json")
    history_retention_days: int = _env_int("HISTORY_RETENTION_DAYS", 365)


# Singleton instances
forecast = ForecastConfig()
price_cache = PriceCacheConfig()
tariff = TariffConfig()
simulated_ess = SimulatedESSConfig()
system = SystemConfig()
