import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import numpy as np

import config
from ess.models import EnergyStats
from optimizer.settings import Settings
from timeutil import hour_start

logger = logging.getLogger(__name__)

# Hourly readings at or below this (kWh) are treated as sensor noise.
NOISE_KWH = 0.1

# Readings from a battery at or above this SOC with no export are assumed curtailed.
_CURTAILED_SOC = 98.0

# Ratio band around 1.0 inside which today's solar is considered on-model.
_TREND_DEADBAND = 0.10


@dataclass
class HourProfile:
    hour: int
    avg_load_kwh: float
    avg_solar_kwh: float
    max_solar_kwh: float


@dataclass
class HourForecast:
    ts: datetime
    hour: int
    load_kwh: float
    solar_kwh: float
    solar_trend: float

    @property
    def net_kwh(self) -> float:
        """Load minus solar: positive means the home needs energy."""
        return self.load_kwh - self.solar_kwh


@dataclass
class Forecast:
    hours: list[HourForecast] = field(default_factory=list)
    solar_trend: float = 1.0
    low_confidence: bool = False


class LoadSolarForecaster:
    """Predicts hourly home load and solar generation from recent history.

    Builds an hour-of-day profile (average load and solar per local hour)
    from the stored hourly EnergyStats, with a few corrections:

    - a single load reading far above every other reading for the same
      hour (a guest, an EV charge) is dropped
    - solar gaps caused by clouds or curtailment are filled towards a bell
      curve fitted to the daylight hours
    - the rest of today is scaled by how today's solar compares to the
      profile so far

    With fewer than 2 days of history it falls back to a flat load and no
    solar, flagged low_confidence.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def forecast(self, history: list[EnergyStats], now: datetime, hours: int | None = None) -> Forecast:
        hours = hours or config.forecast.horizon_hours
        start = hour_start(now)
        tz = now.tzinfo

        days = {h.ts_hour_start.astimezone(tz).date() for h in history}
        if len(days) < 2:
            logger.info(
                "Only %d day(s) of energy history; using flat load of %.2f kWh",
                len(days), config.forecast.default_load_kwh,
            )
            return Forecast(
                hours=[
                    HourForecast(
                        ts=ts, hour=ts.hour,
                        load_kwh=config.forecast.default_load_kwh,
                        solar_kwh=0.0, solar_trend=1.0,
                    )
                    for ts in (start + timedelta(hours=i) for i in range(hours))
                ],
                low_confidence=True,
            )

        profile = self.build_profile(history, now)
        trend = self.solar_trend(history, now, profile)
        logger.debug("Solar trend for today: %.2f", trend)

        cap_ratio = self.settings.solar_trend_ratio_max or 1.0
        out = []
        for i in range(hours):
            ts = start + timedelta(hours=i)
            p = profile.get(ts.hour)
            if p is None:
                load, solar, max_solar = config.forecast.default_load_kwh, 0.0, 0.0
            else:
                load, solar, max_solar = p.avg_load_kwh, p.avg_solar_kwh, p.max_solar_kwh
            hour_trend = trend if ts.date() == now.date() else 1.0
            predicted = min(solar * hour_trend, max_solar * cap_ratio)
            out.append(HourForecast(
                ts=ts, hour=ts.hour, load_kwh=load,
                solar_kwh=predicted, solar_trend=hour_trend,
            ))
        return Forecast(hours=out, solar_trend=trend)

    def build_profile(self, history: list[EnergyStats], now: datetime) -> dict[int, HourProfile]:
        """Average load and solar per local hour of day."""
        tz = now.tzinfo
        by_hour: dict[int, list[EnergyStats]] = defaultdict(list)
        for h in history:
            by_hour[h.ts_hour_start.astimezone(tz).hour].append(h)

        profile = {}
        for hour, points in by_hour.items():
            loads = np.array([p.home_kwh for p in points], dtype=float)
            solars = np.array([p.solar_kwh for p in points], dtype=float)

            keep = self._drop_load_outlier(hour, loads)
            loads, kept_solars = loads[keep], solars[keep]

            valid_load = loads[loads > NOISE_KWH]
            valid_solar = kept_solars[kept_solars > NOISE_KWH]
            profile[hour] = HourProfile(
                hour=hour,
                avg_load_kwh=float(valid_load.mean()) if valid_load.size else 0.0,
                avg_solar_kwh=float(valid_solar.mean()) if valid_solar.size else 0.0,
                max_solar_kwh=float(solars.max()) if solars.size else 0.0,
            )

        if self.settings.solar_bell_curve_multiplier > 0:
            self._smooth_solar(profile, history, now)
        return profile

    def _drop_load_outlier(self, hour: int, loads: np.ndarray) -> np.ndarray:
        """Mask dropping the one reading that exceeds every other by the multiple.

        Nothing is dropped when more than one reading qualifies: that is a
        pattern, not an outlier.
        """
        keep = np.ones(loads.size, dtype=bool)
        multiple = self.settings.ignore_hour_usage_over_multiple
        if loads.size < 3 or multiple <= 1:
            return keep

        outliers = []
        for i, value in enumerate(loads):
            others = np.delete(loads, i)
            if np.all(value > others * multiple):
                outliers.append(i)

        if len(outliers) == 1:
            logger.debug("Ignoring outlier load %.2f kWh at hour %d", loads[outliers[0]], hour)
            keep[outliers[0]] = False
        elif outliers:
            logger.debug("Keeping %d outlier-like loads at hour %d", len(outliers), hour)
        return keep

    def _smooth_solar(self, profile: dict[int, HourProfile], history: list[EnergyStats], now: datetime):
        """Raise daylight hours that fall below a bell curve fitted to the day.

        Only raises: an hour whose average beats the curve keeps its average.
        """
        daylight = sorted(h for h, p in profile.items() if p.avg_solar_kwh > NOISE_KWH)
        if not daylight:
            return
        first, last = daylight[0], daylight[-1]
        duration = last - first + 1
        sigma = duration / 3.0
        mu = first + duration / 2.0

        def bell(x):
            return np.exp(-((np.asarray(x, dtype=float) - mu) ** 2) / (2 * sigma ** 2))

        # Bucket readings we trust: exporting, or the battery still had room.
        tz = now.tzinfo
        valid_by_hour: dict[int, list[float]] = defaultdict(list)
        for h in history:
            hour = h.ts_hour_start.astimezone(tz).hour
            if h.solar_kwh <= NOISE_KWH or float(bell(hour)) <= 0.2:
                continue
            if h.grid_export_kwh > NOISE_KWH or h.max_battery_soc < _CURTAILED_SOC:
                valid_by_hour[hour].append(h.solar_kwh)

        peak = 0.0
        if valid_by_hour:
            best_hour = max(
                valid_by_hour,
                key=lambda hr: (len(valid_by_hour[hr]), float(np.mean(valid_by_hour[hr]))),
            )
            peak = float(np.mean(valid_by_hour[best_hour])) / float(bell(best_hour))
        if peak == 0.0:
            peak = self._raw_peak(history, tz, bell)
        if peak == 0.0:
            return

        multiplier = self.settings.solar_bell_curve_multiplier
        for hour in range(first, last + 1):
            p = profile.get(hour)
            if p is None:
                continue
            predicted = peak * float(bell(hour))
            if p.avg_solar_kwh < predicted:
                smoothed = p.avg_solar_kwh + (predicted - p.avg_solar_kwh) * multiplier
                logger.debug("Smoothing solar at hour %d: %.2f -> %.2f kWh", hour, p.avg_solar_kwh, smoothed)
                p.avg_solar_kwh = smoothed

    @staticmethod
    def _raw_peak(history: list[EnergyStats], tz, bell) -> float:
        """Peak implied by the largest raw reading inside the curve's body."""
        best, peak = 0.0, 0.0
        for h in history:
            factor = float(bell(h.ts_hour_start.astimezone(tz).hour))
            if h.solar_kwh > NOISE_KWH and factor > 0.2 and h.solar_kwh > best:
                best = h.solar_kwh
                peak = h.solar_kwh / factor
        return peak

    def solar_trend(self, history: list[EnergyStats], now: datetime, profile: dict[int, HourProfile]) -> float:
        """Today's solar relative to the profile, from the last two hours seen today.

        1.0 when there is nothing to compare or the difference is within
        10%; otherwise the ratio clamped to [1/max, max].
        """
        tz = now.tzinfo
        today = {}
        for h in history:
            ts = h.ts_hour_start.astimezone(tz)
            if ts.date() == now.date() and ts < now:
                today[ts] = h
        if len(today) < 2:
            return 1.0

        t1 = max(today)
        t2 = t1 - timedelta(hours=1)
        if t2 not in today:
            return 1.0

        recent = today[t1].solar_kwh + today[t2].solar_kwh
        expected = sum(
            profile[t.hour].avg_solar_kwh for t in (t1, t2) if t.hour in profile
        )
        if expected < 0.001:
            return 1.0
        ratio = recent / expected
        if abs(ratio - 1.0) <= _TREND_DEADBAND:
            return 1.0
        max_ratio = max(self.settings.solar_trend_ratio_max, 1.0)
        return float(min(max(ratio, 1.0 / max_ratio), max_ratio))
