import logging
from dataclasses import dataclass, field
from datetime import datetime

from ess.models import EnergyStats
from pricing.base import Price
from timeutil import day_start, hour_start, to_iso

logger = logging.getLogger(__name__)

# Cache lifetimes for savings responses: closed days never change.
PAST_MAX_AGE_S = 86400
CURRENT_MAX_AGE_S = 60


@dataclass
class HourlySavings:
    ts: datetime
    import_price: float
    export_price: float
    battery_to_home_kwh: float
    avoided: float
    grid_to_battery_kwh: float
    charging_cost: float
    solar_to_home_kwh: float
    solar_savings: float

    def to_dict(self) -> dict:
        return {
            "ts": to_iso(self.ts),
            "importPrice": self.import_price,
            "exportPrice": self.export_price,
            "batteryToHome": self.battery_to_home_kwh,
            "avoided": self.avoided,
            "gridToBattery": self.grid_to_battery_kwh,
            "chargingCost": self.charging_cost,
            "solarToHome": self.solar_to_home_kwh,
            "solarSavings": self.solar_savings,
        }


@dataclass
class SavingsStats:
    """Realised cost and savings against a home with no battery or solar.

    All money fields are dollars. battery_savings is always
    avoided_cost - charging_cost so totals stay additive across ranges.
    """

    timestamp: datetime | None = None
    cost: float = 0.0
    credit: float = 0.0
    avoided_cost: float = 0.0
    charging_cost: float = 0.0
    solar_savings: float = 0.0
    home_used_kwh: float = 0.0
    solar_generated_kwh: float = 0.0
    grid_imported_kwh: float = 0.0
    grid_exported_kwh: float = 0.0
    battery_used_kwh: float = 0.0
    hourly: list[HourlySavings] = field(default_factory=list)

    @property
    def battery_savings(self) -> float:
        return self.avoided_cost - self.charging_cost

    def to_dict(self) -> dict:
        return {
            "timestamp": to_iso(self.timestamp),
            "cost": self.cost,
            "credit": self.credit,
            "batterySavings": self.battery_savings,
            "solarSavings": self.solar_savings,
            "avoidedCost": self.avoided_cost,
            "chargingCost": self.charging_cost,
            "solarGenerated": self.solar_generated_kwh,
            "gridImported": self.grid_imported_kwh,
            "gridExported": self.grid_exported_kwh,
            "homeUsed": self.home_used_kwh,
            "batteryUsed": self.battery_used_kwh,
            "hourlyDebugging": [h.to_dict() for h in self.hourly],
        }


class SavingsAccountant:
    """Reconciles hourly energy flows against hourly prices.

    Each energy hour is priced at the price whose start falls in the same
    clock hour. An hour with no price is still counted, at $0.
    """

    def reconcile(
        self, prices: list[Price], energy: list[EnergyStats], start: datetime | None = None,
    ) -> SavingsStats:
        import_prices: dict[datetime, float] = {}
        export_prices: dict[datetime, float] = {}
        for p in prices:
            ts = hour_start(p.ts_start)
            export_prices[ts] = p.dollars_per_kwh
            import_prices[ts] = p.total_dollars_per_kwh

        stats = SavingsStats(timestamp=start)
        missing = 0
        for e in energy:
            ts = hour_start(e.ts_hour_start)
            if ts not in import_prices:
                missing += 1
            import_price = import_prices.get(ts, 0.0)
            export_price = export_prices.get(ts, 0.0)

            stats.home_used_kwh += e.home_kwh
            stats.solar_generated_kwh += e.solar_kwh
            stats.grid_imported_kwh += e.grid_import_kwh
            stats.grid_exported_kwh += e.grid_export_kwh
            stats.battery_used_kwh += e.battery_used_kwh

            stats.cost += e.grid_import_kwh * import_price
            stats.credit += e.grid_export_kwh * export_price

            avoided = e.battery_to_home_kwh * import_price
            grid_to_battery = max(0.0, e.battery_charged_kwh - e.solar_to_battery_kwh)
            charging = grid_to_battery * import_price
            solar = e.solar_to_home_kwh * import_price
            stats.avoided_cost += avoided
            stats.charging_cost += charging
            stats.solar_savings += solar

            stats.hourly.append(HourlySavings(
                ts=ts,
                import_price=import_price,
                export_price=export_price,
                battery_to_home_kwh=e.battery_to_home_kwh,
                avoided=avoided,
                grid_to_battery_kwh=grid_to_battery,
                charging_cost=charging,
                solar_to_home_kwh=e.solar_to_home_kwh,
                solar_savings=solar,
            ))

        if missing:
            logger.warning("%d of %d energy hours had no price; counted at $0", missing, len(energy))
        return stats


def combine(stats: list[SavingsStats], start: datetime | None = None) -> SavingsStats:
    """Sum several sites. The hourly breakdown is only kept for a single site."""
    total = SavingsStats(timestamp=start)
    for s in stats:
        total.cost += s.cost
        total.credit += s.credit
        total.avoided_cost += s.avoided_cost
        total.charging_cost += s.charging_cost
        total.solar_savings += s.solar_savings
        total.home_used_kwh += s.home_used_kwh
        total.solar_generated_kwh += s.solar_generated_kwh
        total.grid_imported_kwh += s.grid_imported_kwh
        total.grid_exported_kwh += s.grid_exported_kwh
        total.battery_used_kwh += s.battery_used_kwh
    if len(stats) == 1:
        total.hourly = list(stats[0].hourly)
    return total


def site_savings(db, site_id: str, provider: str, start: datetime, end: datetime, fees=None) -> SavingsStats:
    """Savings for one site over [start, end) from stored history.

    Stored prices are the shared provider prices; pass the site's SiteFees
    to price the site's own fee periods in.
    """
    prices = db.get_price_history(provider, start, end)
    if fees is not None:
        prices = [fees.apply_fees(p) for p in prices]
    energy = db.get_energy_history(site_id, start, end)
    return SavingsAccountant().reconcile(prices, energy, start)


def cache_control(end: datetime, now: datetime) -> str:
    """Cache-Control header for a savings response covering up to `end`."""
    if end < day_start(now):
        return f"public, max-age={PAST_MAX_AGE_S}"
    return f"public, max-age={CURRENT_MAX_AGE_S}"
