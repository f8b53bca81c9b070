"""Simulated storage system for local runs and tests.

Advances a virtual battery in 5-minute steps using a synthetic home load
(a gentle sine wave) and a solar curve peaking early afternoon. Commanded
modes take effect from the moment they are set, and the simulation keeps
hourly EnergyStats just like a real system would report them.
"""

import logging
import math
import threading
from datetime import datetime, timedelta
from typing import Callable

import config
from errors import ConfigInvalidError
from ess.base import EnergyStorageSystem
from ess.models import EnergyStats, SystemStatus
from optimizer.actions import BatteryMode, SolarMode
from timeutil import day_start, hour_start, now_local

logger = logging.getLogger(__name__)

STEP = timedelta(minutes=5)

# Hourly stats older than this are dropped from memory.
_KEEP_HISTORY = timedelta(days=7)


def home_kw_at(hour: float, base_kw: float) -> float:
    return max(base_kw * 0.66, base_kw + base_kw / 3.0 * math.sin(hour * math.pi))


def solar_kw_at(hour: float, peak_kw: float) -> float:
    if 6 <= hour <= 19:
        return peak_kw * math.sin((hour - 6) / 13 * math.pi)
    return 0.0


class SimulatedESS(EnergyStorageSystem):
    name = "simulated"

    def __init__(
        self,
        site_id: str,
        clock: Callable[[], datetime] = now_local,
        capacity_kwh: float | None = None,
        max_charge_kw: float | None = None,
        max_discharge_kw: float | None = None,
        initial_soc: float | None = None,
    ):
        cfg = config.simulated_ess
        self.site_id = site_id
        self._clock = clock
        self.capacity_kwh = capacity_kwh if capacity_kwh is not None else cfg.capacity_kwh
        self.max_charge_kw = max_charge_kw if max_charge_kw is not None else cfg.max_charge_kw
        self.max_discharge_kw = max_discharge_kw if max_discharge_kw is not None else cfg.max_discharge_kw
        self.soc = initial_soc if initial_soc is not None else cfg.initial_soc
        self.home_base_kw = cfg.home_kw
        self.solar_peak_kw = cfg.solar_peak_kw

        self._lock = threading.Lock()
        self._min_soc = 0.0
        self._export_allowed = False
        self.battery_mode = BatteryMode.LOAD
        self.solar_mode = SolarMode.ANY
        self.mode_changes = 0
        # Start a day back so there is history to forecast from.
        self._timestamp = day_start(clock()) - timedelta(days=1)
        self._hours: dict[datetime, EnergyStats] = {}
        self._last = (0.0, 0.0, 0.0, 0.0)  # battery, solar, home, grid kW

    def apply_settings(self, settings):
        if settings.min_battery_soc > 95:
            raise ConfigInvalidError("Simulated battery needs minBatterySOC <= 95")
        with self._lock:
            self._min_soc = settings.min_battery_soc
            self._export_allowed = settings.grid_export_solar

    def _advance(self, now: datetime):
        """Step the simulation forward to `now`. Caller holds the lock."""
        while self._timestamp < now:
            step_end = min(self._timestamp + STEP, now)
            hours = (step_end - self._timestamp).total_seconds() / 3600.0
            mid = self._timestamp + (step_end - self._timestamp) / 2
            hour = mid.hour + mid.minute / 60.0

            home_kw = home_kw_at(hour, self.home_base_kw)
            solar_kw = solar_kw_at(hour, self.solar_peak_kw)
            net = solar_kw - home_kw
            space_kwh = (100.0 - self.soc) / 100.0 * self.capacity_kwh
            usable_kwh = max(0.0, self.soc - self._min_soc) / 100.0 * self.capacity_kwh

            battery_kw = 0.0
            grid_kw = 0.0
            if net > 0:
                if self.battery_mode in (BatteryMode.CHARGE_ANY, BatteryMode.CHARGE_SOLAR, BatteryMode.LOAD) \
                        or self.soc < self._min_soc:
                    battery_kw = -min(net, self.max_charge_kw, space_kwh / hours)
                excess = net + battery_kw
                if self._export_allowed or self.solar_mode != SolarMode.NO_EXPORT:
                    grid_kw = -excess
                else:
                    solar_kw -= excess
            else:
                if self.battery_mode == BatteryMode.LOAD:
                    battery_kw = min(-net, self.max_discharge_kw, usable_kwh / hours)
                grid_kw = -net - battery_kw

            if (self.battery_mode == BatteryMode.CHARGE_ANY and self.soc < 100) or self.soc < self._min_soc:
                extra = max(0.0, self.max_charge_kw + min(battery_kw, 0.0))
                extra = min(extra, max(0.0, space_kwh / hours + min(battery_kw, 0.0)))
                battery_kw -= extra
                grid_kw += extra

            self.soc = min(100.0, max(0.0, self.soc - battery_kw * hours / self.capacity_kwh * 100.0))
            self._record(self._timestamp, hours, battery_kw, solar_kw, home_kw, grid_kw)
            self._last = (battery_kw, solar_kw, home_kw, grid_kw)
            self._timestamp = step_end

        cutoff = now - _KEEP_HISTORY
        for ts in [ts for ts in self._hours if ts < cutoff]:
            del self._hours[ts]

    def _record(self, ts, hours, battery_kw, solar_kw, home_kw, grid_kw):
        key = hour_start(ts)
        stats = self._hours.get(key)
        if stats is None:
            stats = EnergyStats(ts_hour_start=key, min_battery_soc=100.0)
            self._hours[key] = stats
        stats.min_battery_soc = min(stats.min_battery_soc, self.soc)
        stats.max_battery_soc = max(stats.max_battery_soc, self.soc)

        solar_kwh = solar_kw * hours
        home_kwh = home_kw * hours
        stats.solar_kwh += solar_kwh
        stats.home_kwh += home_kwh
        stats.solar_to_home_kwh += min(solar_kwh, home_kwh)

        if battery_kw < 0:
            charged = -battery_kw * hours
            from_solar = min(max(0.0, solar_kwh - home_kwh), charged)
            stats.battery_charged_kwh += charged
            stats.solar_to_battery_kwh += from_solar
            stats.grid_to_battery_kwh += charged - from_solar
        else:
            used = battery_kw * hours
            stats.battery_used_kwh += used
            stats.battery_to_home_kwh += used

        if grid_kw > 0:
            imported = grid_kw * hours
            stats.grid_import_kwh += imported
            stats.grid_to_home_kwh += max(0.0, imported - max(0.0, -battery_kw * hours - solar_kwh))
        else:
            exported = -grid_kw * hours
            stats.grid_export_kwh += exported
            stats.solar_to_grid_kwh += exported

    def get_status(self, deadline=None) -> SystemStatus:
        now = self._clock()
        with self._lock:
            self._advance(now)
            battery_kw, solar_kw, home_kw, grid_kw = self._last
            return SystemStatus(
                timestamp=now,
                battery_soc=self.soc,
                each_battery_soc=[self.soc],
                battery_kw=battery_kw,
                each_battery_kw=[battery_kw],
                battery_capacity_kwh=self.capacity_kwh,
                max_battery_charge_kw=self.max_charge_kw,
                max_battery_discharge_kw=self.max_discharge_kw,
                solar_kw=solar_kw,
                grid_kw=grid_kw,
                home_kw=home_kw,
                can_export_solar=self.solar_mode != SolarMode.NO_EXPORT,
                can_export_battery=False,
                can_import_battery=self.battery_mode == BatteryMode.CHARGE_ANY,
                elevated_min_battery_soc=self.battery_mode != BatteryMode.LOAD,
                battery_above_min_soc=self.soc > self._min_soc,
            )

    def set_modes(self, battery_mode, solar_mode, deadline=None):
        now = self._clock()
        with self._lock:
            # Run the old modes up to now before switching.
            self._advance(now)
            if battery_mode != BatteryMode.NO_CHANGE:
                self.battery_mode = BatteryMode(battery_mode)
            if solar_mode != SolarMode.NO_CHANGE:
                self.solar_mode = SolarMode(solar_mode)
            self.mode_changes += 1
        logger.info("Simulated %s now %s / %s", self.site_id, self.battery_mode.name, self.solar_mode.name)

    def get_energy_history(self, start: datetime, end: datetime, deadline=None) -> list[EnergyStats]:
        now = self._clock()
        with self._lock:
            self._advance(now)
            current = hour_start(now)
            # Only complete hours are reported.
            return [
                stats for ts, stats in sorted(self._hours.items())
                if start <= ts < end and ts < current
            ]
