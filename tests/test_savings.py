"""Tests for savings reconciliation against the no-battery baseline."""

import os
import sys
from datetime import timedelta

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

from fakes import HOUR, NOW, FakePrices, make_price
from ess.models import EnergyStats
from pricing.fees import FeePeriod, SiteFees
from savings.accountant import SavingsAccountant, cache_control, combine, site_savings
from storage.database import Database
from timeutil import day_start

START = HOUR - timedelta(hours=6)


def make_hour(i, **kwargs):
    defaults = dict(
        home_kwh=2.0, grid_import_kwh=0.5, grid_export_kwh=0.2,
        battery_to_home_kwh=1.0, battery_used_kwh=1.0, battery_charged_kwh=0.8,
        solar_to_battery_kwh=0.3, solar_to_home_kwh=0.5, solar_kwh=1.0,
    )
    defaults.update(kwargs)
    return EnergyStats(ts_hour_start=START + timedelta(hours=i), **defaults)


def make_prices(n, dollars=0.30, fee=0.05):
    return [make_price(dollars, START + timedelta(hours=i), fee=fee) for i in range(n)]


class TestSavingsAccountant:
    def setup_method(self):
        self.accountant = SavingsAccountant()

    def test_single_hour(self):
        stats = self.accountant.reconcile(make_prices(1), [make_hour(0)], START)
        import_price = 0.35
        assert stats.cost == pytest.approx(0.5 * import_price)
        assert stats.credit == pytest.approx(0.2 * 0.30)
        assert stats.avoided_cost == pytest.approx(1.0 * import_price)
        assert stats.charging_cost == pytest.approx(0.5 * import_price)
        assert stats.solar_savings == pytest.approx(0.5 * import_price)
        assert stats.battery_savings == pytest.approx(0.5 * import_price)
        assert len(stats.hourly) == 1

    def test_missing_price_counts_as_zero(self):
        energy = [make_hour(0), make_hour(1)]
        stats = self.accountant.reconcile(make_prices(1), energy, START)
        assert stats.home_used_kwh == pytest.approx(4.0)
        assert stats.cost == pytest.approx(0.5 * 0.35)
        assert stats.hourly[1].import_price == 0.0

    def test_solar_charging_is_free(self):
        hour = make_hour(0, battery_charged_kwh=0.3, solar_to_battery_kwh=0.5)
        stats = self.accountant.reconcile(make_prices(1), [hour], START)
        assert stats.charging_cost == 0.0

    def test_partition_additivity(self):
        """Savings over [a, c) equal savings over [a, b) plus [b, c)."""
        energy = [make_hour(i, battery_to_home_kwh=0.2 * i, grid_import_kwh=0.1 * i) for i in range(6)]
        prices = [make_price(0.10 + 0.05 * i, START + timedelta(hours=i), fee=0.02) for i in range(6)]
        whole = self.accountant.reconcile(prices, energy, START)
        first = self.accountant.reconcile(prices[:2], energy[:2], START)
        second = self.accountant.reconcile(prices[2:], energy[2:], START)
        assert whole.battery_savings == pytest.approx(first.battery_savings + second.battery_savings)
        assert whole.cost == pytest.approx(first.cost + second.cost)

    def test_combine_sites(self):
        a = self.accountant.reconcile(make_prices(2), [make_hour(0), make_hour(1)], START)
        b = self.accountant.reconcile(make_prices(1), [make_hour(0)], START)
        total = combine([a, b], START)
        assert total.battery_savings == pytest.approx(a.battery_savings + b.battery_savings)
        assert total.home_used_kwh == pytest.approx(6.0)
        assert total.hourly == []
        assert len(combine([a], START).hourly) == 2

    def test_to_dict_keys(self):
        d = self.accountant.reconcile(make_prices(1), [make_hour(0)], START).to_dict()
        assert d["batterySavings"] == pytest.approx(d["avoidedCost"] - d["chargingCost"])
        assert len(d["hourlyDebugging"]) == 1


class TestSiteSavings:
    def setup_method(self):
        self.db = Database(":memory:")
        for p in make_prices(3):
            self.db.upsert_price(p, 1)
        for i in range(3):
            self.db.upsert_energy_stats("home", make_hour(i), 1)

    def test_from_stored_history(self):
        stats = site_savings(self.db, "home", "fake", START, START + timedelta(hours=3))
        assert stats.cost == pytest.approx(3 * 0.5 * 0.35)

    def test_site_fees_priced_in(self):
        hours = {(START + timedelta(hours=i)).hour for i in range(3)}
        fees = SiteFees(FakePrices(), [
            FeePeriod(hour_start=min(hours), hour_end=max(hours) + 1, dollars_per_kwh=0.10),
        ])
        stats = site_savings(self.db, "home", "fake", START, START + timedelta(hours=3), fees)
        assert stats.cost == pytest.approx(3 * 0.5 * 0.45)


class TestCacheControl:
    def test_closed_day_cached_long(self):
        assert cache_control(day_start(NOW) - timedelta(seconds=1), NOW) == "public, max-age=86400"

    def test_today_cached_briefly(self):
        assert cache_control(NOW, NOW) == "public, max-age=60"
