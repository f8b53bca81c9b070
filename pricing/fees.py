import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime

from pricing.base import Price, PriceProvider
from timeutil import from_iso, local_tz, to_iso

logger = logging.getLogger(__name__)


@dataclass
class FeePeriod:
    """A flat $/kWh fee applied to prices starting in local hours [hour_start, hour_end).

    start/end optionally bound the dates the fee applies to (end exclusive).
    Grid fees land on the delivery component, others on the energy price.
    """

    hour_start: int
    hour_end: int
    dollars_per_kwh: float
    grid_additional: bool = True
    start: datetime | None = None
    end: datetime | None = None
    description: str = ""

    def applies_to(self, ts: datetime) -> bool:
        if self.start is not None and ts < self.start:
            return False
        if self.end is not None and ts >= self.end:
            return False
        return self.hour_start <= ts.astimezone(local_tz()).hour < self.hour_end

    def to_dict(self) -> dict:
        return {
            "hourStart": self.hour_start,
            "hourEnd": self.hour_end,
            "dollarsPerKWH": self.dollars_per_kwh,
            "gridAdditional": self.grid_additional,
            "start": to_iso(self.start),
            "end": to_iso(self.end),
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "FeePeriod":
        return cls(
            hour_start=int(d.get("hourStart", 0)),
            hour_end=int(d.get("hourEnd", 24)),
            dollars_per_kwh=float(d.get("dollarsPerKWH", 0.0)),
            grid_additional=bool(d.get("gridAdditional", True)),
            start=from_iso(d.get("start")),
            end=from_iso(d.get("end")),
            description=d.get("description", ""),
        )


class SiteFees(PriceProvider):
    """Wraps a shared provider and overlays one site's fee periods."""

    def __init__(self, base: PriceProvider, periods: list[FeePeriod] | None = None):
        self.base = base
        self.name = base.name
        self._lock = threading.Lock()
        self._periods = list(periods or [])

    def apply_settings(self, settings):
        with self._lock:
            self._periods = [FeePeriod.from_dict(p) for p in settings.additional_fees_periods]
        logger.debug("Applied %d fee periods to %s prices", len(self._periods), self.name)

    def apply_fees(self, price: Price) -> Price:
        with self._lock:
            periods = list(self._periods)
        ts = price.ts_start
        for period in periods:
            if not period.applies_to(ts):
                continue
            if period.grid_additional:
                price = replace(
                    price,
                    grid_addl_dollars_per_kwh=price.grid_addl_dollars_per_kwh + period.dollars_per_kwh,
                )
            else:
                price = replace(price, dollars_per_kwh=price.dollars_per_kwh + period.dollars_per_kwh)
        return price

    def get_current_price(self, deadline=None) -> Price:
        return self.apply_fees(self.base.get_current_price(deadline))

    def get_future_prices(self, deadline=None) -> list[Price]:
        return [self.apply_fees(p) for p in self.base.get_future_prices(deadline)]

    def get_confirmed_prices(self, start: datetime, end: datetime, deadline=None) -> list[Price]:
        return [self.apply_fees(p) for p in self.base.get_confirmed_prices(start, end, deadline)]
