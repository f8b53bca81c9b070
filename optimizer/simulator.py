import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

import config
from ess.models import EnergyStats, SystemStatus
from forecasting.load_solar import Forecast, LoadSolarForecaster
from optimizer.actions import BatteryMode, Reason, SolarMode
from optimizer.policy import ArbitragePolicy, PolicyInputs
from optimizer.predictor import DeficitCapacityPredictor
from optimizer.settings import Settings
from pricing.base import Price
from timeutil import hour_start, to_iso

logger = logging.getLogger(__name__)

PREVIEW_HOURS = 24


@dataclass
class ForecastHour:
    ts: datetime
    hour: int
    net_load_solar_kwh: float
    grid_charge_dollars_per_kwh: float
    solar_opp_dollars_per_kwh: float
    avg_home_load_kwh: float
    predicted_solar_kwh: float
    battery_kwh: float
    battery_capacity_kwh: float
    battery_reserve_kwh: float
    today_solar_trend: float
    battery_mode: BatteryMode
    solar_mode: SolarMode
    reason: Reason

    def to_dict(self) -> dict:
        return {
            "ts": to_iso(self.ts),
            "hour": self.hour,
            "netLoadSolarKWH": self.net_load_solar_kwh,
            "gridChargeDollarsPerKWH": self.grid_charge_dollars_per_kwh,
            "solarOppDollarsPerKWH": self.solar_opp_dollars_per_kwh,
            "avgHomeLoadKWH": self.avg_home_load_kwh,
            "predictedSolarKWH": self.predicted_solar_kwh,
            "batteryKWH": self.battery_kwh,
            "batteryCapacityKWH": self.battery_capacity_kwh,
            "batteryReserveKWH": self.battery_reserve_kwh,
            "todaySolarTrend": self.today_solar_trend,
            "batteryMode": int(self.battery_mode),
            "solarMode": int(self.solar_mode),
            "reason": self.reason.value,
        }


def step_battery(
    energy: float,
    mode: BatteryMode,
    load_kwh: float,
    solar_kwh: float,
    capacity: float,
    reserve: float,
    charge_kw: float,
    discharge_kw: float,
) -> float:
    """Advance the battery one hour and return its new energy (kWh).

    Solar serves the home first and any surplus charges the battery up to
    the charge rate. LOAD covers the remaining home load from the battery
    down to the reserve; STANDBY and the charge modes leave that to the
    grid. CHARGE_ANY tops up from the grid with whatever rate is left.
    """
    net = solar_kwh - load_kwh
    charged = 0.0
    if net > 0:
        charged = min(net, charge_kw, max(0.0, capacity - energy))
        energy += charged
    elif mode == BatteryMode.LOAD:
        energy -= min(-net, discharge_kw, max(0.0, energy - reserve))

    if mode == BatteryMode.CHARGE_ANY:
        energy += min(max(0.0, charge_kw - charged), max(0.0, capacity - energy))
    return energy


class Simulator:
    """24 hour advisory preview of what the policy would do.

    Runs the forecaster, predictor and policy hour by hour against a
    virtual battery. The safety gate is not applied, nothing is persisted
    and no hardware is touched.
    """

    def __init__(
        self,
        predictor: DeficitCapacityPredictor | None = None,
        policy: ArbitragePolicy | None = None,
    ):
        self.predictor = predictor or DeficitCapacityPredictor()
        self.policy = policy or ArbitragePolicy()

    def simulate(
        self,
        now: datetime,
        status: SystemStatus,
        current_price: Price,
        future_prices: list[Price],
        history: list[EnergyStats],
        settings: Settings,
        hours: int = PREVIEW_HOURS,
    ) -> list[ForecastHour]:
        horizon = config.forecast.horizon_hours
        forecast = LoadSolarForecaster(settings).forecast(history, now, hours=hours + horizon)

        capacity = status.battery_capacity_kwh
        reserve = capacity * settings.min_battery_soc / 100.0
        charge_kw = status.max_battery_charge_kw or math.inf
        discharge_kw = status.max_battery_discharge_kw or math.inf
        energy = status.battery_kwh

        by_hour = {hour_start(p.ts_start): p for p in future_prices}
        start = hour_start(now)

        out = []
        for i in range(hours):
            hf = forecast.hours[i]
            ts = start + timedelta(hours=i)
            price = current_price if i == 0 else by_hour.get(ts) or replace(
                current_price, ts_start=ts, ts_end=ts + timedelta(hours=1),
            )

            soc = energy / capacity * 100.0 if capacity > 0 else 0.0
            virtual = replace(status, timestamp=ts, battery_soc=soc, battery_kw=0.0)
            window = Forecast(
                hours=forecast.hours[i:i + horizon],
                solar_trend=forecast.solar_trend,
                low_confidence=forecast.low_confidence,
            )
            prediction = self.predictor.predict(virtual, settings, window)
            decision = self.policy.decide(PolicyInputs(
                now=ts if i else now,
                status=virtual,
                settings=settings,
                current_price=price,
                future_prices=[p for p in future_prices if hour_start(p.ts_start) > ts],
                prediction=prediction,
            ))

            energy = step_battery(
                energy, decision.battery_mode, hf.load_kwh, hf.solar_kwh,
                capacity, reserve, charge_kw, discharge_kw,
            )
            out.append(ForecastHour(
                ts=ts,
                hour=ts.hour,
                net_load_solar_kwh=hf.load_kwh - hf.solar_kwh,
                grid_charge_dollars_per_kwh=price.total_dollars_per_kwh + settings.additional_fees_dollars_per_kwh,
                solar_opp_dollars_per_kwh=price.dollars_per_kwh if settings.grid_export_solar else 0.0,
                avg_home_load_kwh=hf.load_kwh,
                predicted_solar_kwh=hf.solar_kwh,
                battery_kwh=energy,
                battery_capacity_kwh=capacity,
                battery_reserve_kwh=reserve,
                today_solar_trend=hf.solar_trend,
                battery_mode=decision.battery_mode,
                solar_mode=decision.solar_mode,
                reason=decision.reason,
            ))

        logger.debug("Simulated %d hours from %s", len(out), start.isoformat())
        return out
