import logging
from dataclasses import dataclass, field, fields, replace

import config
from errors import ConfigInvalidError

logger = logging.getLogger(__name__)

# Bump when adding fields that need a non-zero default for existing sites,
# and add the matching step to migrate_settings.
CURRENT_SETTINGS_VERSION = 3

_JSON_NAMES = {
    "dry_run": "dryRun",
    "pause": "pause",
    "ignore_hour_usage_over_multiple": "ignoreHourUsageOverMultiple",
    "always_charge_under_dollars_per_kwh": "alwaysChargeUnderDollarsPerKWH",
    "additional_fees_dollars_per_kwh": "additionalFeesDollarsPerKWH",
    "min_arbitrage_difference_dollars_per_kwh": "minArbitrageDifferenceDollarsPerKWH",
    "min_deficit_price_difference_dollars_per_kwh": "minDeficitPriceDifferenceDollarsPerKWH",
    "min_battery_soc": "minBatterySOC",
    "grid_charge_batteries": "gridChargeBatteries",
    "grid_export_solar": "gridExportSolar",
    "solar_trend_ratio_max": "solarTrendRatioMax",
    "solar_bell_curve_multiplier": "solarBellCurveMultiplier",
    "price_provider": "priceProvider",
    "ess_provider": "essProvider",
    "additional_fees_periods": "additionalFeesPeriods",
}


@dataclass
class Settings:
    """Per-site tunables. Money is $/kWh, SOC is percent.

    Zero-valued fields are filled in by migrate_settings; a freshly
    constructed Settings() is the pre-migration (version 0) shape.
    """

    dry_run: bool = False
    pause: bool = False
    # Hour-of-day load samples above this multiple of the others are ignored.
    ignore_hour_usage_over_multiple: float = 0.0
    always_charge_under_dollars_per_kwh: float = 0.0
    additional_fees_dollars_per_kwh: float = 0.0
    min_arbitrage_difference_dollars_per_kwh: float = 0.0
    min_deficit_price_difference_dollars_per_kwh: float = 0.0
    min_battery_soc: float = 0.0
    grid_charge_batteries: bool = False
    grid_export_solar: bool = False
    solar_trend_ratio_max: float = 0.0
    # 0 disables bell curve smoothing, 1.0 is full weight.
    solar_bell_curve_multiplier: float = 0.0
    price_provider: str = config.tariff.name
    ess_provider: str = "simulated"
    additional_fees_periods: list[dict] = field(default_factory=list)

    def validate(self):
        if not 0 <= self.min_battery_soc <= 100:
            raise ConfigInvalidError(f"minBatterySOC must be within 0-100, got {self.min_battery_soc}")
        if not 0 <= self.solar_bell_curve_multiplier <= 1:
            raise ConfigInvalidError(
                f"solarBellCurveMultiplier must be within 0-1, got {self.solar_bell_curve_multiplier}"
            )
        if self.solar_trend_ratio_max < 1:
            raise ConfigInvalidError(f"solarTrendRatioMax must be >= 1, got {self.solar_trend_ratio_max}")
        if self.ignore_hour_usage_over_multiple < 0:
            raise ConfigInvalidError("ignoreHourUsageOverMultiple must not be negative")
        if not self.price_provider:
            raise ConfigInvalidError("priceProvider is required")
        if not self.ess_provider:
            raise ConfigInvalidError("essProvider is required")
        for period in self.additional_fees_periods:
            start, end = period.get("hourStart", 0), period.get("hourEnd", 24)
            if not 0 <= start < end <= 24:
                raise ConfigInvalidError(f"Invalid fee period hours: {start}-{end}")

    def to_dict(self) -> dict:
        return {_JSON_NAMES[f.name]: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, d: dict) -> "Settings":
        kwargs = {}
        for f in fields(cls):
            key = _JSON_NAMES[f.name]
            if key in d:
                kwargs[f.name] = d[key]
        return cls(**kwargs)


def migrate_settings(settings: Settings, version: int) -> tuple[Settings, bool]:
    """Bring settings stored at `version` up to CURRENT_SETTINGS_VERSION.

    Each step only fills fields that are still zero, so values a user set
    explicitly survive. Grid charging and export are never turned on by
    migration.

    Returns (settings, migrated).
    """
    if version >= CURRENT_SETTINGS_VERSION:
        return settings, False

    migrated = False

    def fill(s: Settings, name: str, value) -> Settings:
        nonlocal migrated
        if getattr(s, name) == 0:
            migrated = True
            return replace(s, **{name: value})
        return s

    s = settings
    for step in range(version + 1, CURRENT_SETTINGS_VERSION + 1):
        if step == 1:
            s = fill(s, "ignore_hour_usage_over_multiple", 2.0)
            s = fill(s, "always_charge_under_dollars_per_kwh", 0.05)
            s = fill(s, "min_arbitrage_difference_dollars_per_kwh", 0.03)
            s = fill(s, "min_battery_soc", 20.0)
        elif step == 2:
            s = fill(s, "min_deficit_price_difference_dollars_per_kwh", 0.02)
        elif step == 3:
            s = fill(s, "solar_trend_ratio_max", 3.0)
            s = fill(s, "solar_bell_curve_multiplier", 1.0)
        else:
            raise ConfigInvalidError(f"Unknown settings version: {step}")

    return s, migrated


def default_settings() -> Settings:
    return migrate_settings(Settings(), 0)[0]


def load_settings(db, site_id: str) -> tuple[Settings, int]:
    """Read a site's settings, migrating and persisting older versions.

    Returns (settings, revision). Unknown sites get defaults at revision 0.
    """
    row = db.get_settings(site_id)
    if row is None:
        return default_settings(), 0

    settings = Settings.from_dict(row["data"])
    revision = row["revision"]
    settings, migrated = migrate_settings(settings, row["version"])
    if migrated or row["version"] < CURRENT_SETTINGS_VERSION:
        logger.info("Migrated settings for %s from version %d to %d",
                    site_id, row["version"], CURRENT_SETTINGS_VERSION)
        revision = db.put_settings(site_id, settings.to_dict(), CURRENT_SETTINGS_VERSION, revision)
    return settings, revision


def update_settings(db, site_id: str, changes: dict, expected_revision: int) -> tuple[Settings, int]:
    """Apply a partial update (JSON field names) with optimistic concurrency.

    Raises ConfigInvalidError for invalid values and SettingsConflictError
    when expected_revision is stale.
    """
    current, _ = load_settings(db, site_id)
    unknown = set(changes) - set(_JSON_NAMES.values())
    if unknown:
        raise ConfigInvalidError(f"Unknown settings: {', '.join(sorted(unknown))}")
    merged = Settings.from_dict({**current.to_dict(), **changes})
    merged.validate()
    revision = db.put_settings(site_id, merged.to_dict(), CURRENT_SETTINGS_VERSION, expected_revision)
    logger.info("Updated settings for %s (revision %d)", site_id, revision)
    return merged, revision
