"""Tests for the arbitrage rule table and no-change settling."""

import os
import sys
from datetime import timedelta

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

from fakes import HOUR, NOW, future_prices, make_price, make_settings, make_status
from optimizer.actions import BatteryMode, Reason, SolarMode
from optimizer.policy import ArbitragePolicy, PolicyInputs, settle_modes
from optimizer.predictor import Prediction


def make_inputs(soc=50.0, capacity=13.5, price=0.20, future=None, settings=None,
                deficit_in=None, deficit_kwh=0.0, capacity_in=None, status=None):
    return PolicyInputs(
        now=NOW,
        status=status or make_status(soc=soc, capacity=capacity),
        settings=settings or make_settings(),
        current_price=make_price(price),
        future_prices=future if future is not None else future_prices({h: price for h in range(1, 24)}),
        prediction=Prediction(
            deficit_at=HOUR + timedelta(hours=deficit_in) if deficit_in is not None else None,
            capacity_at=HOUR + timedelta(hours=capacity_in) if capacity_in is not None else None,
            deficit_kwh=deficit_kwh,
            capacity_kwh=capacity,
        ),
    )


class TestArbitragePolicy:
    def setup_method(self):
        self.policy = ArbitragePolicy(window_hours=24)

    def test_sufficient_battery(self):
        """80% SOC, mid price, no crossings -> keep using the battery."""
        d = self.policy.decide(make_inputs(soc=80.0, price=0.20))
        assert d.reason == Reason.SUFFICIENT_BATTERY
        assert d.battery_mode == BatteryMode.LOAD

    def test_always_charge_below_threshold(self):
        """Price at 0.02 under a 0.05 threshold -> charge from anything."""
        settings = make_settings(always_charge_under_dollars_per_kwh=0.05)
        d = self.policy.decide(make_inputs(price=0.02, settings=settings))
        assert d.reason == Reason.ALWAYS_CHARGE_BELOW_THRESHOLD
        assert d.battery_mode == BatteryMode.CHARGE_ANY

    def test_always_charge_at_threshold(self):
        settings = make_settings(always_charge_under_dollars_per_kwh=0.05)
        d = self.policy.decide(make_inputs(price=0.05, settings=settings))
        assert d.battery_mode == BatteryMode.CHARGE_ANY

    def test_deficit_charge_when_nothing_cheaper_before_deficit(self):
        """15% SOC, 20% reserve, deficit in 2h, later hours pricier -> charge now."""
        settings = make_settings(min_battery_soc=20.0, grid_charge_batteries=True)
        inputs = make_inputs(
            soc=15.0, price=0.20, settings=settings,
            future=future_prices({h: 0.30 for h in range(1, 24)}),
            deficit_in=2, deficit_kwh=2.0,
        )
        d = self.policy.decide(inputs)
        assert d.reason == Reason.DEFICIT_CHARGE
        assert d.battery_mode == BatteryMode.CHARGE_ANY
        assert d.future_price.dollars_per_kwh == 0.30

    def test_deficit_charge_requires_grid_charging(self):
        settings = make_settings(min_battery_soc=20.0, grid_charge_batteries=False)
        inputs = make_inputs(
            soc=15.0, price=0.20, settings=settings,
            future=future_prices({h: 0.30 for h in range(1, 24)}),
            deficit_in=2, deficit_kwh=2.0,
        )
        d = self.policy.decide(inputs)
        assert d.battery_mode != BatteryMode.CHARGE_ANY

    def test_arbitrage_charge_before_peak(self):
        settings = make_settings(grid_charge_batteries=True)
        future = future_prices({h: 0.10 for h in range(1, 24)} | {6: 0.45})
        d = self.policy.decide(make_inputs(price=0.10, future=future, settings=settings))
        assert d.reason == Reason.ARBITRAGE_CHARGE
        assert d.battery_mode == BatteryMode.CHARGE_ANY
        assert d.future_price.ts_start == HOUR + timedelta(hours=6)

    def test_arbitrage_needs_minimum_spread(self):
        settings = make_settings(grid_charge_batteries=True, min_arbitrage_difference_dollars_per_kwh=0.05)
        future = future_prices({h: 0.10 for h in range(1, 24)} | {6: 0.14})
        d = self.policy.decide(make_inputs(price=0.10, future=future, settings=settings))
        assert d.reason == Reason.SUFFICIENT_BATTERY

    def test_discharge_before_capacity(self):
        d = self.policy.decide(make_inputs(soc=90.0, capacity_in=3))
        assert d.reason == Reason.DISCHARGE_BEFORE_CAPACITY
        assert d.battery_mode == BatteryMode.LOAD

    def test_same_hour_deficit_and_capacity_resolves_to_deficit(self):
        d = self.policy.decide(make_inputs(deficit_in=4, deficit_kwh=1.0, capacity_in=4))
        assert d.reason != Reason.DISCHARGE_BEFORE_CAPACITY
        assert d.reason == Reason.DISCHARGE_AT_PEAK

    def test_deficit_save_for_peak(self):
        """Deficit ahead and a pricier hour coming -> hold the battery for it."""
        future = future_prices({h: 0.20 for h in range(1, 24)} | {3: 0.45})
        d = self.policy.decide(make_inputs(price=0.20, future=future, deficit_in=5, deficit_kwh=1.0))
        assert d.reason == Reason.DEFICIT_SAVE_FOR_PEAK
        assert d.battery_mode == BatteryMode.STANDBY
        assert d.future_price.dollars_per_kwh == 0.45

    def test_waiting_to_charge(self):
        """A cheaper hour before the peak -> wait for it rather than charge now."""
        settings = make_settings(grid_charge_batteries=True)
        future = future_prices({1: 0.15, 2: 0.45})
        d = self.policy.decide(make_inputs(
            price=0.20, future=future, settings=settings, deficit_in=6, deficit_kwh=1.0,
        ))
        assert d.reason == Reason.WAITING_TO_CHARGE
        assert d.battery_mode == BatteryMode.STANDBY
        assert d.future_price.dollars_per_kwh == 0.15

    def test_save_for_peak_when_cheap_hour_follows_peak(self):
        """Peak in 2h, really cheap hour in 6h, deficit in 8h -> hold for the peak."""
        settings = make_settings(
            grid_charge_batteries=True,
            min_deficit_price_difference_dollars_per_kwh=0.01,
            min_arbitrage_difference_dollars_per_kwh=2.0,
        )
        future = future_prices({h: 0.20 for h in range(1, 24)} | {2: 0.50, 6: 0.05})
        d = self.policy.decide(make_inputs(
            price=0.20, future=future, settings=settings, deficit_in=8, deficit_kwh=1.0,
        ))
        assert d.reason == Reason.DEFICIT_SAVE_FOR_PEAK
        assert d.battery_mode == BatteryMode.STANDBY
        assert d.future_price.dollars_per_kwh == 0.50
        assert "Deficit predicted" in d.description

    def test_waiting_for_cheap_hour_before_peak(self):
        settings = make_settings(
            grid_charge_batteries=True,
            min_deficit_price_difference_dollars_per_kwh=0.01,
            min_arbitrage_difference_dollars_per_kwh=2.0,
        )
        future = future_prices({h: 0.20 for h in range(1, 24)} | {2: 0.05, 6: 0.50})
        d = self.policy.decide(make_inputs(
            price=0.20, future=future, settings=settings, deficit_in=8, deficit_kwh=1.0,
        ))
        assert d.reason == Reason.WAITING_TO_CHARGE
        assert d.future_price.ts_start == HOUR + timedelta(hours=2)

    def test_discharge_at_peak(self):
        future = future_prices({h: 0.20 for h in range(1, 24)})
        d = self.policy.decide(make_inputs(price=0.45, future=future, deficit_in=5, deficit_kwh=1.0))
        assert d.reason == Reason.DISCHARGE_AT_PEAK
        assert d.battery_mode == BatteryMode.LOAD

    def test_missing_battery(self):
        d = self.policy.decide(make_inputs(capacity=0.0))
        assert d.reason == Reason.MISSING_BATTERY
        assert d.battery_mode == BatteryMode.STANDBY

    def test_missing_battery_wins_over_cheap_price(self):
        settings = make_settings(always_charge_under_dollars_per_kwh=0.05)
        d = self.policy.decide(make_inputs(capacity=0.0, price=0.01, settings=settings))
        assert d.reason == Reason.MISSING_BATTERY

    def test_deficit_beyond_window_is_ignored(self):
        policy = ArbitragePolicy(window_hours=6)
        future = future_prices({h: 0.20 for h in range(1, 24)} | {3: 0.45})
        d = policy.decide(make_inputs(price=0.20, future=future, deficit_in=10, deficit_kwh=1.0))
        assert d.reason == Reason.SUFFICIENT_BATTERY

    def test_missing_future_prices_fall_back_to_current(self):
        d = self.policy.decide(make_inputs(price=0.20, future=[], deficit_in=3, deficit_kwh=1.0))
        assert d.reason == Reason.DISCHARGE_AT_PEAK

    def test_negative_price_disables_export(self):
        settings = make_settings(grid_export_solar=True)
        d = self.policy.decide(make_inputs(price=-0.05, settings=settings))
        assert d.solar_mode == SolarMode.NO_EXPORT
        assert d.description.endswith("Export disabled due to negative price.")

    def test_export_follows_settings(self):
        assert self.policy.decide(make_inputs(settings=make_settings(grid_export_solar=True))).solar_mode == SolarMode.ANY
        assert self.policy.decide(make_inputs()).solar_mode == SolarMode.NO_EXPORT

    def test_negative_price_never_exports_across_scenarios(self):
        settings = make_settings(grid_export_solar=True, grid_charge_batteries=True)
        for kwargs in ({}, {"deficit_in": 2, "deficit_kwh": 3.0}, {"capacity_in": 2}, {"soc": 100.0}):
            d = self.policy.decide(make_inputs(price=-0.01, settings=settings, **kwargs))
            assert d.solar_mode != SolarMode.ANY

    def test_decisions_are_deterministic(self):
        settings = make_settings(grid_charge_batteries=True)
        future = future_prices({1: 0.15, 2: 0.45})
        inputs = make_inputs(price=0.20, future=future, settings=settings, deficit_in=6, deficit_kwh=1.0)
        first = self.policy.decide(inputs)
        second = self.policy.decide(inputs)
        assert (first.battery_mode, first.solar_mode, first.reason, first.description) == \
            (second.battery_mode, second.solar_mode, second.reason, second.description)

    def test_explanation_matches_reason(self):
        d = self.policy.decide(make_inputs(soc=80.0))
        assert d.explanation
        assert d.current_price.dollars_per_kwh == 0.20


class TestSettleModes:
    def setup_method(self):
        self.settings = make_settings()
        self.policy = ArbitragePolicy(window_hours=24)

    def decision(self, **kwargs):
        return self.policy.decide(make_inputs(**kwargs))

    def test_load_already_in_effect(self):
        status = make_status(elevated_min_battery_soc=False)
        battery, _ = settle_modes(self.decision(status=status), status, self.settings)
        assert battery == BatteryMode.NO_CHANGE

    def test_load_from_elevated_reserve_is_sent(self):
        status = make_status(elevated_min_battery_soc=True)
        battery, _ = settle_modes(self.decision(status=status), status, self.settings)
        assert battery == BatteryMode.LOAD

    def test_charge_already_charging(self):
        settings = make_settings(always_charge_under_dollars_per_kwh=0.05)
        status = make_status(battery_kw=-3.0, elevated_min_battery_soc=True)
        d = self.decision(price=0.01, settings=settings, status=status)
        battery, _ = settle_modes(d, status, settings)
        assert battery == BatteryMode.NO_CHANGE

    def test_standby_when_idle(self):
        status = make_status(battery_kw=0.0)
        d = self.decision(status=status, future=future_prices({3: 0.45}), deficit_in=5, deficit_kwh=1.0)
        assert d.battery_mode == BatteryMode.STANDBY
        battery, _ = settle_modes(d, status, self.settings)
        assert battery == BatteryMode.NO_CHANGE

    def test_standby_while_discharging_is_sent(self):
        status = make_status(battery_kw=2.0, elevated_min_battery_soc=False)
        d = self.decision(status=status, future=future_prices({3: 0.45}), deficit_in=5, deficit_kwh=1.0)
        battery, _ = settle_modes(d, status, self.settings)
        assert battery == BatteryMode.STANDBY

    def test_solar_mode_already_matching(self):
        settings = make_settings(grid_export_solar=True)
        status = make_status(can_export_solar=True)
        d = self.decision(settings=settings, status=status)
        _, solar = settle_modes(d, status, settings)
        assert solar == SolarMode.NO_CHANGE

    def test_solar_mode_change_is_sent(self):
        status = make_status(can_export_solar=True)
        _, solar = settle_modes(self.decision(status=status), status, self.settings)
        assert solar == SolarMode.NO_EXPORT
