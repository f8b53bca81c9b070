import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import config
from controller.deadline import Deadline
from errors import ConfigInvalidError, TransientUpstreamError
from ess.base import EnergyStorageSystem
from forecasting.load_solar import LoadSolarForecaster
from optimizer.actions import Action, BatteryMode, SolarMode
from optimizer.policy import ArbitragePolicy, Decision, PolicyInputs, settle_modes
from optimizer.predictor import DeficitCapacityPredictor, Prediction
from optimizer.safety import SafetyGate, SafetyState, evaluate_safety, override_decision
from optimizer.settings import Settings, load_settings
from pricing.base import Price, PriceProvider
from pricing.fees import SiteFees
from storage.database import Database
from timeutil import day_start, hour_start, now_local

logger = logging.getLogger(__name__)

# Bump to force a re-sync of stored history after a change in how it is computed.
ENERGY_STATS_VERSION = 1
PRICE_HISTORY_VERSION = 1


@dataclass
class CycleResult:
    site_id: str
    status: str                   # "success", or the safety state that stopped the cycle
    action: Action
    price: Price | None

    def to_response(self) -> dict:
        return {
            "status": self.status,
            "action": self.action.to_dict(),
            "price": self.price.to_dict() if self.price else None,
        }


class SiteRegistry:
    """Resolves a site's settings to its ESS adapter and price provider.

    Price providers are shared across sites (and cached); each site gets its
    own SiteFees overlay. ESS adapters are created once per site.
    """

    def __init__(
        self,
        ess_factories: dict[str, Callable[[str], EnergyStorageSystem]],
        price_providers: dict[str, PriceProvider],
    ):
        self.ess_factories = ess_factories
        self.price_providers = price_providers
        self._lock = threading.Lock()
        self._ess: dict[tuple[str, str], EnergyStorageSystem] = {}
        self._fees: dict[tuple[str, str], SiteFees] = {}

    def base_provider(self, name: str) -> PriceProvider:
        provider = self.price_providers.get(name)
        if provider is None:
            raise ConfigInvalidError(f"Unknown price provider: {name}")
        return provider

    def prices(self, site_id: str, settings: Settings) -> SiteFees:
        base = self.base_provider(settings.price_provider)
        key = (site_id, settings.price_provider)
        with self._lock:
            if key not in self._fees:
                self._fees[key] = SiteFees(base)
            return self._fees[key]

    def ess(self, site_id: str, settings: Settings) -> EnergyStorageSystem:
        factory = self.ess_factories.get(settings.ess_provider)
        if factory is None:
            raise ConfigInvalidError(f"Unknown ESS provider: {settings.ess_provider}")
        key = (site_id, settings.ess_provider)
        with self._lock:
            if key not in self._ess:
                self._ess[key] = factory(site_id)
            return self._ess[key]


class DecisionCycle:
    """One site's update: sync history, check safety, decide, apply, record.

    Stages run in order and check the cycle deadline before starting. Modes
    are sent at most once, after the final decision, and never in dry run.
    Every completed cycle records exactly one Action.
    """

    def __init__(
        self,
        db: Database,
        registry: SiteRegistry,
        policy: ArbitragePolicy | None = None,
        clock: Callable[[], datetime] = now_local,
    ):
        self.db = db
        self.registry = registry
        self.gate = SafetyGate(policy or ArbitragePolicy())
        self.predictor = DeficitCapacityPredictor()
        self._clock = clock
        self._sync_lock = threading.Lock()
        self._synced_providers: set[str] = set()

    def begin_batch(self):
        """Allow price history to sync again (once per provider per batch)."""
        with self._sync_lock:
            self._synced_providers.clear()

    def run(self, site_id: str, deadline: Deadline | None = None) -> CycleResult:
        deadline = deadline or Deadline(config.system.cycle_timeout_s)
        now = self._clock()
        logger.info("[%s] cycle starting", site_id)

        # 1. Settings: invalid settings stop the cycle before any hardware call
        deadline.check("settings")
        settings, _ = load_settings(self.db, site_id)
        settings.validate()
        dry_run = settings.dry_run or config.system.dry_run
        ess = self.registry.ess(site_id, settings)
        prices = self.registry.prices(site_id, settings)
        ess.apply_settings(settings)
        prices.apply_settings(settings)

        # 2. Keep stored energy and price history current
        deadline.check("energy history")
        self.sync_energy_history(site_id, ess, now, deadline)
        deadline.check("price history")
        self.sync_price_history(settings.price_provider, now, deadline)

        # 3. Status and current price are fetched even when paused or faulted
        deadline.check("status")
        status = ess.get_status(deadline)
        deadline.check("current price")
        current = prices.get_current_price(deadline)
        logger.info(
            "[%s] SOC=%.1f%% battery=%.2fkW solar=%.2fkW home=%.2fkW price=$%.3f",
            site_id, status.battery_soc, status.battery_kw, status.solar_kw,
            status.home_kw, current.dollars_per_kwh,
        )

        # 4. Safety gate
        state = evaluate_safety(settings, status, now)
        if state != SafetyState.NORMAL:
            decision = override_decision(state, PolicyInputs(
                now=now, status=status, settings=settings, current_price=current,
                future_prices=[], prediction=Prediction(),
            ))
            action = self._action(now, decision, status, dry_run,
                                  BatteryMode.NO_CHANGE, SolarMode.NO_CHANGE)
            self.db.insert_action(site_id, action)
            logger.warning("[%s] %s; no mode change", site_id, decision.description)
            return CycleResult(site_id=site_id, status=state.value, action=action, price=current)

        # 5. Future prices degrade to an empty list
        deadline.check("future prices")
        try:
            future = prices.get_future_prices(deadline)
        except TransientUpstreamError as e:
            logger.warning("[%s] future prices unavailable, continuing without: %s", site_id, e)
            future = []

        # 6. Forecast, predict, decide
        deadline.check("decide")
        history = self.db.get_energy_history(
            site_id, now - timedelta(days=config.forecast.history_days), now,
        )
        forecast = LoadSolarForecaster(settings).forecast(history, now)
        prediction = self.predictor.predict(status, settings, forecast)
        _, decision = self.gate.decide(PolicyInputs(
            now=now, status=status, settings=settings, current_price=current,
            future_prices=future, prediction=prediction,
        ))
        battery_mode, solar_mode = settle_modes(decision, status, settings)
        action = self._action(now, decision, status, dry_run, battery_mode, solar_mode)
        logger.info("[%s] %s -> %s/%s (%s)", site_id, decision.reason.value,
                    decision.battery_mode.name, decision.solar_mode.name, decision.description)

        # 7. Apply once, then record
        if dry_run:
            logger.info("[%s] dry run: not changing modes", site_id)
        elif battery_mode == BatteryMode.NO_CHANGE and solar_mode == SolarMode.NO_CHANGE:
            logger.info("[%s] hardware already in requested modes", site_id)
        else:
            try:
                deadline.check("set modes")
                ess.set_modes(battery_mode, solar_mode, deadline)
            except Exception as e:
                action.failed = True
                action.error = str(e)
                action.description += " FAILED"
                self.db.insert_action(site_id, action)
                logger.error("[%s] failed to set modes: %s", site_id, e)
                raise

        self.db.insert_action(site_id, action)
        return CycleResult(site_id=site_id, status="success", action=action, price=current)

    @staticmethod
    def _action(now, decision: Decision, status, dry_run, battery_mode, solar_mode) -> Action:
        return Action(
            timestamp=now,
            reason=decision.reason,
            description=decision.description,
            explanation=decision.explanation,
            battery_mode=decision.battery_mode,
            solar_mode=decision.solar_mode,
            applied_battery_mode=BatteryMode.NO_CHANGE if dry_run else battery_mode,
            applied_solar_mode=SolarMode.NO_CHANGE if dry_run else solar_mode,
            current_price=decision.current_price,
            future_price=decision.future_price,
            deficit_at=decision.deficit_at,
            capacity_at=decision.capacity_at,
            system_status=status,
            dry_run=dry_run,
            fault=decision.fault,
            paused=decision.paused,
        )

    # -- History sync --

    def sync_energy_history(self, site_id: str, ess: EnergyStorageSystem, now: datetime, deadline: Deadline):
        """Fetch complete hours since the last stored one, a day at a time.

        The latest stored hour is fetched again since it may have been
        partial. A failure leaves what was stored so far and the cycle
        continues on stale history.
        """
        latest, version = self.db.get_latest_energy_time(site_id)
        earliest = day_start(now) - timedelta(days=config.forecast.backfill_days)
        if latest is None or version < ENERGY_STATS_VERSION or latest < earliest:
            start = earliest
        else:
            start = hour_start(latest.astimezone(now.tzinfo))
        end = hour_start(now)

        stored = 0
        try:
            while start < end:
                deadline.check("energy history")
                chunk_end = min(day_start(start) + timedelta(days=1), end)
                for stats in ess.get_energy_history(start, chunk_end, deadline):
                    self.db.upsert_energy_stats(site_id, stats, ENERGY_STATS_VERSION)
                    stored += 1
                start = chunk_end
        except TransientUpstreamError as e:
            logger.warning("[%s] energy history sync stopped after %d hours: %s", site_id, stored, e)
            return
        if stored:
            logger.info("[%s] synced %d hours of energy history", site_id, stored)

    def sync_price_history(self, provider_name: str, now: datetime, deadline: Deadline):
        with self._sync_lock:
            if provider_name in self._synced_providers:
                return
            self._synced_providers.add(provider_name)

        provider = self.registry.base_provider(provider_name)
        latest, version = self.db.get_latest_price_time(provider_name)
        earliest = day_start(now) - timedelta(days=config.forecast.backfill_days)
        if latest is None or version < PRICE_HISTORY_VERSION or latest < earliest:
            start = earliest
        else:
            start = hour_start(latest.astimezone(now.tzinfo)) + timedelta(hours=1)

        try:
            confirmed = provider.get_confirmed_prices(start, hour_start(now), deadline)
        except TransientUpstreamError as e:
            logger.warning("Price history sync for %s failed: %s", provider_name, e)
            with self._sync_lock:
                self._synced_providers.discard(provider_name)
            return
        for price in confirmed:
            self.db.upsert_price(price, PRICE_HISTORY_VERSION)
        if confirmed:
            logger.info("Synced %d hours of %s price history", len(confirmed), provider_name)
