"""Rule-based battery/solar mode selection.

The policy is an ordered table of rules evaluated against one snapshot
(status, prices, prediction, settings). The first rule whose predicate
matches decides the battery mode; solar mode is chosen independently.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import config
from ess.models import SystemStatus
from optimizer.actions import BatteryMode, EXPLANATIONS, Reason, SolarMode
from optimizer.predictor import Prediction
from optimizer.settings import Settings
from pricing.base import Price
from timeutil import hour_start

logger = logging.getLogger(__name__)

_EPS = 1e-9


@dataclass
class PolicyInputs:
    now: datetime
    status: SystemStatus
    settings: Settings
    current_price: Price
    future_prices: list[Price]
    prediction: Prediction


@dataclass
class Decision:
    battery_mode: BatteryMode
    solar_mode: SolarMode
    reason: Reason
    description: str
    explanation: str
    current_price: Price | None = None
    future_price: Price | None = None
    deficit_at: datetime | None = None
    capacity_at: datetime | None = None
    fault: bool = False
    paused: bool = False


@dataclass
class _Slot:
    ts: datetime
    cost: float          # $/kWh to import in this hour, fees included
    price: Price


@dataclass
class _Context:
    """Everything the rule predicates look at, computed once per decision."""

    inputs: PolicyInputs
    now_cost: float
    slots: list[_Slot]
    deficit_at: datetime | None
    capacity_at: datetime | None
    peak: _Slot | None = None
    deficit_reference: _Slot | None = None
    deficit_reference_cost: float = math.inf
    charge_window: _Slot | None = None

    @property
    def settings(self) -> Settings:
        return self.inputs.settings

    @property
    def status(self) -> SystemStatus:
        return self.inputs.status

    @property
    def current(self) -> Price:
        return self.inputs.current_price

    @property
    def pricier_ahead(self) -> bool:
        return self.peak is not None and self.peak.cost > self.now_cost + _EPS


def _fmt(ts: datetime | None) -> str:
    return ts.strftime("%H:%M") if ts else "-"


def _build_context(inputs: PolicyInputs, window_hours: int) -> _Context:
    settings = inputs.settings
    fees = settings.additional_fees_dollars_per_kwh
    current = inputs.current_price
    now_cost = current.total_dollars_per_kwh + fees

    start = hour_start(inputs.now)
    window_end = start + timedelta(hours=window_hours)
    by_hour = {hour_start(p.ts_start): p for p in inputs.future_prices}

    slots = []
    for i in range(1, window_hours):
        ts = start + timedelta(hours=i)
        price = by_hour.get(ts)
        if price is None:
            # No future price for this hour: assume the current price holds.
            price = Price(
                provider=current.provider, ts_start=ts, ts_end=ts + timedelta(hours=1),
                dollars_per_kwh=current.dollars_per_kwh,
                grid_addl_dollars_per_kwh=current.grid_addl_dollars_per_kwh,
            )
        slots.append(_Slot(ts=ts, cost=price.total_dollars_per_kwh + fees, price=price))

    prediction = inputs.prediction
    deficit_at = prediction.deficit_at if prediction.deficit_at and prediction.deficit_at < window_end else None
    capacity_at = prediction.capacity_at if prediction.capacity_at and prediction.capacity_at < window_end else None
    ctx = _Context(inputs=inputs, now_cost=now_cost, slots=slots,
                   deficit_at=deficit_at, capacity_at=capacity_at)

    if slots:
        # Earliest hour with the highest cost.
        ctx.peak = max(slots, key=lambda s: (s.cost, -s.ts.timestamp()))

    if deficit_at is not None:
        before = sorted(
            (s for s in slots if s.ts <= deficit_at),
            key=lambda s: (s.cost, s.ts),
        )
        if before:
            charge_kw = inputs.status.max_battery_charge_kw or inputs.status.battery_capacity_kwh / 3.0
            # Hours needed to cover the deficit, rounding up past a small buffer.
            needed = max(1, int(prediction.deficit_kwh / charge_kw + 0.84)) if charge_kw > 0 else 1
            ctx.deficit_reference = before[min(needed, len(before)) - 1]
            ctx.deficit_reference_cost = ctx.deficit_reference.cost

        # Only worth waiting for if the cheap hour comes before the peak.
        ref = ctx.deficit_reference
        if (ctx.pricier_ahead and ref is not None and ref.ts < ctx.peak.ts
                and ref.cost <= now_cost + _EPS):
            ctx.charge_window = ref
    return ctx


# -- Rule predicates --

def _missing_battery(ctx: _Context) -> bool:
    return ctx.status.battery_capacity_kwh <= 0


def _always_charge(ctx: _Context) -> bool:
    return ctx.current.dollars_per_kwh <= ctx.settings.always_charge_under_dollars_per_kwh


def _deficit_charge(ctx: _Context) -> bool:
    if not ctx.settings.grid_charge_batteries or ctx.deficit_at is None:
        return False
    delta = ctx.settings.min_deficit_price_difference_dollars_per_kwh
    return ctx.now_cost + delta <= ctx.deficit_reference_cost + _EPS


def _arbitrage_charge(ctx: _Context) -> bool:
    if not ctx.settings.grid_charge_batteries or ctx.deficit_at is not None:
        return False
    if ctx.capacity_at is not None or ctx.status.battery_soc >= 100 or ctx.peak is None:
        return False
    delta = ctx.settings.min_arbitrage_difference_dollars_per_kwh
    return ctx.now_cost + delta < ctx.peak.cost


def _discharge_before_capacity(ctx: _Context) -> bool:
    if ctx.capacity_at is None:
        return False
    # Same hour counts as a deficit: reserve wins over curtailment.
    return ctx.deficit_at is None or ctx.capacity_at < ctx.deficit_at


def _deficit_save_for_peak(ctx: _Context) -> bool:
    return ctx.deficit_at is not None and ctx.pricier_ahead and not _waiting_to_charge(ctx)


def _waiting_to_charge(ctx: _Context) -> bool:
    return (
        ctx.deficit_at is not None
        and ctx.settings.grid_charge_batteries
        and ctx.charge_window is not None
    )


def _discharge_at_peak(ctx: _Context) -> bool:
    return ctx.deficit_at is not None and not ctx.pricier_ahead


def _always(ctx: _Context) -> bool:
    return True


# -- Descriptions --

def _describe_missing_battery(ctx):
    return "No battery capacity reported."


def _describe_always_charge(ctx):
    return (f"Price ${ctx.current.dollars_per_kwh:.3f} is at or below "
            f"${ctx.settings.always_charge_under_dollars_per_kwh:.3f}.")


def _describe_deficit_charge(ctx):
    delta = ctx.settings.min_deficit_price_difference_dollars_per_kwh
    later = ("no later hour" if ctx.deficit_reference is None
             else f"later ${ctx.deficit_reference_cost:.3f}")
    return (f"Projected deficit at {_fmt(ctx.deficit_at)}. Charge now (${ctx.now_cost:.3f}) "
            f"+ delta (${delta:.3f}) <= {later}.")


def _describe_arbitrage_charge(ctx):
    return (f"Arbitrage opportunity at {_fmt(ctx.peak.ts)}. "
            f"Buy@{ctx.now_cost:.3f} -> Save@{ctx.peak.cost:.3f}.")


def _describe_discharge_before_capacity(ctx):
    return f"Battery predicted full at {_fmt(ctx.capacity_at)}; using it before solar is curtailed."


def _describe_deficit_save_for_peak(ctx):
    return (f"Deficit predicted at {_fmt(ctx.deficit_at)} and higher prices later "
            f"(${ctx.now_cost:.3f} < ${ctx.peak.cost:.3f} at {_fmt(ctx.peak.ts)}).")


def _describe_waiting_to_charge(ctx):
    return (f"Deficit predicted at {_fmt(ctx.deficit_at)}; waiting to charge at "
            f"{_fmt(ctx.charge_window.ts)} (${ctx.charge_window.cost:.3f}) before the "
            f"peak at {_fmt(ctx.peak.ts)}.")


def _describe_discharge_at_peak(ctx):
    return "Deficit predicted but current price is peak."


def _describe_sufficient(ctx):
    return "Sufficient battery."


@dataclass(frozen=True)
class Rule:
    reason: Reason
    battery_mode: BatteryMode
    applies: Callable[[_Context], bool]
    describe: Callable[[_Context], str]
    reference: Callable[[_Context], Price | None] = lambda ctx: None


RULES: tuple[Rule, ...] = (
    Rule(Reason.MISSING_BATTERY, BatteryMode.STANDBY,
         _missing_battery, _describe_missing_battery),
    Rule(Reason.ALWAYS_CHARGE_BELOW_THRESHOLD, BatteryMode.CHARGE_ANY,
         _always_charge, _describe_always_charge),
    Rule(Reason.DEFICIT_CHARGE, BatteryMode.CHARGE_ANY,
         _deficit_charge, _describe_deficit_charge,
         lambda ctx: ctx.deficit_reference.price if ctx.deficit_reference else None),
    Rule(Reason.ARBITRAGE_CHARGE, BatteryMode.CHARGE_ANY,
         _arbitrage_charge, _describe_arbitrage_charge,
         lambda ctx: ctx.peak.price),
    Rule(Reason.DISCHARGE_BEFORE_CAPACITY, BatteryMode.LOAD,
         _discharge_before_capacity, _describe_discharge_before_capacity),
    Rule(Reason.DEFICIT_SAVE_FOR_PEAK, BatteryMode.STANDBY,
         _deficit_save_for_peak, _describe_deficit_save_for_peak,
         lambda ctx: ctx.peak.price),
    Rule(Reason.WAITING_TO_CHARGE, BatteryMode.STANDBY,
         _waiting_to_charge, _describe_waiting_to_charge,
         lambda ctx: ctx.charge_window.price),
    Rule(Reason.DISCHARGE_AT_PEAK, BatteryMode.LOAD,
         _discharge_at_peak, _describe_discharge_at_peak),
    Rule(Reason.SUFFICIENT_BATTERY, BatteryMode.LOAD,
         _always, _describe_sufficient),
)


class ArbitragePolicy:
    """Chooses battery and solar modes from one snapshot of the site.

    Pure: the same inputs always produce the same Decision. Deficit and
    capacity crossings beyond the price window are ignored.
    """

    def __init__(self, window_hours: int | None = None, rules: tuple[Rule, ...] = RULES):
        self.window_hours = window_hours or config.forecast.future_price_window_hours
        self.rules = rules

    def decide(self, inputs: PolicyInputs) -> Decision:
        ctx = _build_context(inputs, self.window_hours)
        rule = next(r for r in self.rules if r.applies(ctx))

        description = rule.describe(ctx)
        solar_mode = SolarMode.ANY if inputs.settings.grid_export_solar else SolarMode.NO_EXPORT
        if inputs.current_price.dollars_per_kwh < 0:
            solar_mode = SolarMode.NO_EXPORT
            description += " Export disabled due to negative price."

        logger.debug("Rule %s matched: %s", rule.reason.value, description)
        return Decision(
            battery_mode=rule.battery_mode,
            solar_mode=solar_mode,
            reason=rule.reason,
            description=description,
            explanation=EXPLANATIONS[rule.reason],
            current_price=inputs.current_price,
            future_price=rule.reference(ctx),
            deficit_at=inputs.prediction.deficit_at,
            capacity_at=inputs.prediction.capacity_at,
        )


def settle_modes(decision: Decision, status: SystemStatus, settings: Settings) -> tuple[BatteryMode, SolarMode]:
    """Replace targets the hardware already satisfies with NO_CHANGE."""
    battery = decision.battery_mode
    grid_ok = not settings.grid_charge_batteries or status.can_import_battery

    if battery == BatteryMode.CHARGE_ANY:
        charging = status.battery_kw < 0 or status.battery_soc >= 99
        if charging and status.elevated_min_battery_soc and grid_ok:
            battery = BatteryMode.NO_CHANGE
    elif battery == BatteryMode.CHARGE_SOLAR:
        charging = status.battery_kw < 0 or status.battery_soc >= 99
        if charging and status.elevated_min_battery_soc and not status.can_import_battery:
            battery = BatteryMode.NO_CHANGE
    elif battery == BatteryMode.STANDBY:
        grid_charging = False
        if status.battery_kw < -0.1 and status.grid_kw > 0:
            surplus = status.solar_kw - status.home_kw
            grid_charging = surplus < 0 or surplus + status.battery_kw > 0.1
        if status.battery_kw > 0:
            # Discharging above an already-elevated reserve: a previous standby holds.
            if status.battery_above_min_soc and status.elevated_min_battery_soc:
                battery = BatteryMode.NO_CHANGE
        elif not grid_charging:
            # Idle, or charging from solar which standby can't stop anyway.
            battery = BatteryMode.NO_CHANGE
    elif battery == BatteryMode.LOAD:
        if not status.elevated_min_battery_soc and grid_ok:
            battery = BatteryMode.NO_CHANGE

    solar = decision.solar_mode
    if solar == SolarMode.NO_EXPORT and not status.can_export_solar:
        solar = SolarMode.NO_CHANGE
    elif solar == SolarMode.ANY and status.can_export_solar:
        solar = SolarMode.NO_CHANGE
    return battery, solar
