"""Time-of-use tariff price provider.

Reads a CSV file with a 24h start time, an energy price and an optional
grid delivery fee (both $/kWh). Prices are produced hourly using
step-function interpolation: the price at a given time is the most recent
entry at or before that time, wrapping to the last entry before the first.

Example CSV format:
    time,dollars_per_kwh,grid_fee
    00:00,0.12,0.03
    16:00,0.45,0.05
    21:00,0.20,0.03
"""

import csv
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

from pricing.base import Price, PriceProvider
from timeutil import hour_start, hours_between, now_local

logger = logging.getLogger(__name__)


def load_tou_schedule(csv_path: str) -> list[dict]:
    """Load a time-of-use schedule from a CSV file.

    Returns a sorted list of dicts with keys: time_minutes (minutes since
    midnight), dollars_per_kwh, grid_fee.
    """
    path = Path(csv_path)
    if not path.exists():
        raise FileNotFoundError(f"Tariff CSV not found: {csv_path}")

    entries = []
    with open(path, newline="", encoding="utf-8-sig") as f:
        reader = csv.reader(f)
        header = next(reader, None)
        if header is None:
            raise ValueError("Tariff CSV is empty")

        for row_num, row in enumerate(reader, start=2):
            if len(row) < 2:
                continue
            time_str = row[0].strip()
            try:
                parts = time_str.split(":")
                hour = int(parts[0])
                minute = int(parts[1]) if len(parts) > 1 else 0
                time_minutes = hour * 60 + minute
            except (ValueError, IndexError):
                logger.warning("Skipping invalid time on row %d: %s", row_num, time_str)
                continue

            try:
                price = float(row[1].strip())
                fee = float(row[2].strip()) if len(row) > 2 and row[2].strip() else 0.0
            except ValueError:
                logger.warning("Skipping invalid prices on row %d", row_num)
                continue

            entries.append({
                "time_minutes": time_minutes,
                "dollars_per_kwh": price,
                "grid_fee": fee,
            })

    if not entries:
        raise ValueError(f"No valid tariff entries found in {csv_path}")

    entries.sort(key=lambda e: e["time_minutes"])
    logger.info("Loaded %d tariff entries from %s", len(entries), csv_path)
    return entries


def _get_price_at(schedule: list[dict], minutes_since_midnight: int) -> tuple[float, float]:
    """Get (dollars_per_kwh, grid_fee) for a time of day using step interpolation."""
    result = schedule[-1]  # default: wrap to last entry
    for entry in schedule:
        if entry["time_minutes"] <= minutes_since_midnight:
            result = entry
        else:
            break
    return result["dollars_per_kwh"], result["grid_fee"]


class TimeOfUseProvider(PriceProvider):
    """Hourly prices from a fixed daily schedule.

    The schedule is known in advance, so current, future and confirmed
    prices all come from the same step function.
    """

    def __init__(
        self,
        schedule: list[dict],
        name: str = "tou",
        horizon_hours: int = 24,
        clock: Callable[[], datetime] = now_local,
    ):
        if not schedule:
            raise ValueError("Tariff schedule is empty")
        self.schedule = sorted(schedule, key=lambda e: e["time_minutes"])
        self.name = name
        self.horizon_hours = horizon_hours
        self._clock = clock

    @classmethod
    def from_csv(cls, csv_path: str, **kwargs) -> "TimeOfUseProvider":
        return cls(load_tou_schedule(csv_path), **kwargs)

    def price_for_hour(self, ts: datetime) -> Price:
        start = hour_start(ts)
        price, fee = _get_price_at(self.schedule, start.hour * 60 + start.minute)
        return Price(
            provider=self.name,
            ts_start=start,
            ts_end=start + timedelta(hours=1),
            dollars_per_kwh=price,
            grid_addl_dollars_per_kwh=fee,
        )

    def get_current_price(self, deadline=None) -> Price:
        return self.price_for_hour(self._clock())

    def get_future_prices(self, deadline=None) -> list[Price]:
        start = hour_start(self._clock()) + timedelta(hours=1)
        end = start + timedelta(hours=self.horizon_hours)
        return [self.price_for_hour(ts) for ts in hours_between(start, end)]

    def get_confirmed_prices(self, start: datetime, end: datetime, deadline=None) -> list[Price]:
        end = min(end, self._clock())
        return [self.price_for_hour(ts) for ts in hours_between(start, end)]
