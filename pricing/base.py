from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

from timeutil import from_iso, to_iso


@dataclass
class Price:
    provider: str
    ts_start: datetime
    ts_end: datetime
    dollars_per_kwh: float          # energy price, may be negative
    grid_addl_dollars_per_kwh: float = 0.0  # delivery/grid fees on import
    sample_count: int = 1

    @property
    def total_dollars_per_kwh(self) -> float:
        return self.dollars_per_kwh + self.grid_addl_dollars_per_kwh

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "tsStart": to_iso(self.ts_start),
            "tsEnd": to_iso(self.ts_end),
            "dollarsPerKWH": self.dollars_per_kwh,
            "gridUseDollarsPerKWH": self.grid_addl_dollars_per_kwh,
            "sampleCount": self.sample_count,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Price":
        return cls(
            provider=d["provider"],
            ts_start=from_iso(d["tsStart"]),
            ts_end=from_iso(d["tsEnd"]),
            dollars_per_kwh=d.get("dollarsPerKWH", 0.0),
            grid_addl_dollars_per_kwh=d.get("gridUseDollarsPerKWH", 0.0),
            sample_count=d.get("sampleCount", 1),
        )


class PriceProvider(ABC):
    """Source of current, future and confirmed (settled) prices.

    Every call takes the cycle deadline so HTTP-backed providers can bound
    their request timeouts by the time left in the cycle.
    """

    name = "base"

    @abstractmethod
    def get_current_price(self, deadline=None) -> Price:
        ...

    @abstractmethod
    def get_future_prices(self, deadline=None) -> list[Price]:
        """Hourly prices after the current hour, ordered. May be empty."""

    @abstractmethod
    def get_confirmed_prices(self, start: datetime, end: datetime, deadline=None) -> list[Price]:
        """Settled hourly prices in [start, end)."""
