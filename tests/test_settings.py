"""Tests for site settings: defaults, migration, validation and revisions."""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from errors import ConfigInvalidError, SettingsConflictError
from optimizer.settings import (
    CURRENT_SETTINGS_VERSION, Settings, default_settings, load_settings, migrate_settings,
    update_settings,
)
from storage.database import Database


class TestMigration:
    def test_defaults(self):
        s = default_settings()
        assert s.min_battery_soc == 20.0
        assert s.always_charge_under_dollars_per_kwh == 0.05
        assert s.min_arbitrage_difference_dollars_per_kwh == 0.03
        assert s.min_deficit_price_difference_dollars_per_kwh == 0.02
        assert s.ignore_hour_usage_over_multiple == 2.0
        assert s.solar_trend_ratio_max == 3.0
        assert s.solar_bell_curve_multiplier == 1.0
        assert not s.grid_charge_batteries
        assert not s.grid_export_solar

    def test_user_values_survive(self):
        s, migrated = migrate_settings(Settings(min_battery_soc=35.0), 0)
        assert migrated
        assert s.min_battery_soc == 35.0

    def test_only_later_steps_applied(self):
        s, _ = migrate_settings(Settings(), 2)
        assert s.min_battery_soc == 0.0
        assert s.solar_trend_ratio_max == 3.0

    def test_current_version_untouched(self):
        s, migrated = migrate_settings(Settings(), CURRENT_SETTINGS_VERSION)
        assert not migrated
        assert s.solar_trend_ratio_max == 0.0

    def test_json_names(self):
        d = default_settings().to_dict()
        assert d["minBatterySOC"] == 20.0
        assert Settings.from_dict(d) == default_settings()


class TestValidation:
    @pytest.mark.parametrize("changes", [
        {"min_battery_soc": 101.0},
        {"min_battery_soc": -1.0},
        {"solar_bell_curve_multiplier": 1.5},
        {"solar_trend_ratio_max": 0.5},
        {"ignore_hour_usage_over_multiple": -2.0},
        {"price_provider": ""},
        {"additional_fees_periods": [{"hourStart": 20, "hourEnd": 4}]},
    ])
    def test_invalid(self, changes):
        s = default_settings()
        for k, v in changes.items():
            setattr(s, k, v)
        with pytest.raises(ConfigInvalidError):
            s.validate()

    def test_defaults_valid(self):
        default_settings().validate()


class TestStoredSettings:
    def setup_method(self):
        self.db = Database(":memory:")

    def test_unknown_site_gets_defaults(self):
        settings, revision = load_settings(self.db, "new")
        assert revision == 0
        assert settings == default_settings()

    def test_update_and_reload(self):
        _, revision = update_settings(self.db, "home", {"gridChargeBatteries": True}, 0)
        assert revision == 1
        settings, revision = load_settings(self.db, "home")
        assert settings.grid_charge_batteries
        assert revision == 1

    def test_stale_revision_conflicts(self):
        update_settings(self.db, "home", {"pause": True}, 0)
        update_settings(self.db, "home", {"pause": False}, 1)
        with pytest.raises(SettingsConflictError):
            update_settings(self.db, "home", {"dryRun": True}, 1)

    def test_unknown_keys_rejected(self):
        with pytest.raises(ConfigInvalidError):
            update_settings(self.db, "home", {"turbo": True}, 0)

    def test_invalid_update_not_stored(self):
        with pytest.raises(ConfigInvalidError):
            update_settings(self.db, "home", {"minBatterySOC": 150}, 0)
        assert self.db.get_settings("home") is None

    def test_old_version_migrated_on_read(self):
        self.db.put_settings("home", {"minBatterySOC": 30.0}, 1, 0)
        settings, revision = load_settings(self.db, "home")
        assert settings.min_battery_soc == 30.0
        assert settings.solar_trend_ratio_max == 3.0
        assert revision == 2
        assert self.db.get_settings("home")["version"] == CURRENT_SETTINGS_VERSION
