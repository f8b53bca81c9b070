"""Tests for the simulated storage system."""

import os
import sys
from datetime import timedelta

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

from fakes import HOUR, NOW, FixedClock, make_settings
from errors import ConfigInvalidError
from ess.simulated import SimulatedESS, solar_kw_at
from optimizer.actions import BatteryMode, SolarMode
from timeutil import day_start


class TestSimulatedESS:
    def setup_method(self):
        self.clock = FixedClock(NOW)
        self.ess = SimulatedESS("home", clock=self.clock, capacity_kwh=100.0,
                                max_charge_kw=5.0, max_discharge_kw=5.0, initial_soc=50.0)
        self.ess.apply_settings(make_settings())

    def test_status_shape(self):
        status = self.ess.get_status()
        assert status.timestamp == NOW
        assert status.battery_capacity_kwh == 100.0
        assert 0.0 <= status.battery_soc <= 100.0
        assert status.each_battery_soc == [status.battery_soc]

    def test_history_has_only_complete_hours(self):
        history = self.ess.get_energy_history(day_start(NOW) - timedelta(days=1), NOW)
        assert history[0].ts_hour_start == day_start(NOW) - timedelta(days=1)
        assert history[-1].ts_hour_start == HOUR - timedelta(hours=1)
        assert all(h.home_kwh > 0 for h in history)
        assert any(h.solar_kwh > 0 for h in history)

    def test_charge_any_fills_battery(self):
        self.ess.set_modes(BatteryMode.CHARGE_ANY, SolarMode.NO_CHANGE)
        before = self.ess.get_status().battery_soc
        self.clock.advance(hours=2)
        status = self.ess.get_status()
        assert status.battery_soc > before
        assert status.can_import_battery
        assert self.ess.solar_mode == SolarMode.ANY

    def test_standby_holds_at_night(self):
        self.clock.now = NOW.replace(hour=22)
        self.ess.set_modes(BatteryMode.STANDBY, SolarMode.NO_EXPORT)
        before = self.ess.get_status().battery_soc
        self.clock.advance(hours=1)
        assert self.ess.get_status().battery_soc == pytest.approx(before)

    def test_mode_changes_counted(self):
        self.ess.set_modes(BatteryMode.LOAD, SolarMode.NO_EXPORT)
        self.ess.set_modes(BatteryMode.NO_CHANGE, SolarMode.ANY)
        assert self.ess.mode_changes == 2
        assert self.ess.battery_mode == BatteryMode.LOAD
        assert self.ess.solar_mode == SolarMode.ANY

    def test_rejects_high_reserve(self):
        with pytest.raises(ConfigInvalidError):
            self.ess.apply_settings(make_settings(min_battery_soc=99.0))

    def test_solar_curve(self):
        assert solar_kw_at(3.0, 5.0) == 0.0
        assert solar_kw_at(12.5, 5.0) == pytest.approx(5.0)
