"""Rate Arbitrage System - Main Scheduler

Runs every scheduler interval, for every site at once:
1. Sync energy history from the site's storage system
2. Sync price history (once per provider)
3. Read system status and the current price
4. Check the safety gate (pause, emergency, alarms, storms)
5. Forecast load/solar and predict deficit/capacity crossings
6. Pick a battery/solar mode from the arbitrage rules and apply it
7. Write a status JSON with results, a 24h preview and today's savings
"""

import json
import logging
import os
import signal
import sys
import time
from datetime import timedelta
from pathlib import Path

import schedule

import config
from controller.batch import run_sites
from controller.cycle import DecisionCycle, SiteRegistry
from controller.deadline import Deadline
from ess.simulated import SimulatedESS
from optimizer.settings import load_settings
from optimizer.simulator import Simulator
from pricing.cache import CachedPriceProvider, PriceCache
from pricing.tou import TimeOfUseProvider
from savings.accountant import cache_control, combine, site_savings
from storage.database import Database
from timeutil import day_start, now_local

logging.basicConfig(
    level=getattr(logging, config.system.log_level),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

logger = logging.getLogger("rate_arb")


class RateArbSystem:
    def __init__(self, db: Database | None = None):
        self.db = db or Database()
        self.price_cache = PriceCache()
        tariff = TimeOfUseProvider.from_csv(config.tariff.csv_path, name=config.tariff.name)
        self.registry = SiteRegistry(
            ess_factories={SimulatedESS.name: SimulatedESS},
            price_providers={tariff.name: CachedPriceProvider(tariff, self.price_cache)},
        )
        self.cycle = DecisionCycle(self.db, self.registry)
        self.simulator = Simulator(self.cycle.predictor, self.cycle.gate.policy)

        self._last_results: dict[str, str] = {}
        self._running = True

    def site_ids(self) -> list[str]:
        configured = [s.strip() for s in config.system.site_ids.split(",") if s.strip()]
        return sorted(set(configured) | set(self.db.list_sites()))

    def run_cycle(self):
        """Execute one decision cycle for every site."""
        cycle_start = time.monotonic()
        sites = self.site_ids()
        logger.info("=== Decision cycle starting for %d sites ===", len(sites))
        self._last_results = run_sites(self.cycle, sites, config.system.cycle_timeout_s)
        for site_id, outcome in self._last_results.items():
            logger.info("  %s: %s", site_id, outcome)
        logger.info("=== Cycle complete in %.1fs ===", time.monotonic() - cycle_start)

        try:
            self._write_status(sites)
        except Exception as e:
            logger.warning("Failed to write status: %s", e)

    def preview(self, site_id: str) -> list[dict]:
        """24h advisory simulation for one site. Touches no hardware modes."""
        now = now_local()
        deadline = Deadline(config.system.cycle_timeout_s)
        settings, _ = load_settings(self.db, site_id)
        ess = self.registry.ess(site_id, settings)
        prices = self.registry.prices(site_id, settings)
        ess.apply_settings(settings)
        prices.apply_settings(settings)

        status = ess.get_status(deadline)
        current = prices.get_current_price(deadline)
        future = prices.get_future_prices(deadline)
        history = self.db.get_energy_history(
            site_id, now - timedelta(days=config.forecast.history_days), now,
        )
        hours = self.simulator.simulate(now, status, current, future, history, settings)
        return [h.to_dict() for h in hours]

    def savings_today(self, sites: list[str]) -> dict:
        now = now_local()
        start = day_start(now)
        stats = []
        for site_id in sites:
            settings, _ = load_settings(self.db, site_id)
            fees = self.registry.prices(site_id, settings)
            fees.apply_settings(settings)
            stats.append(site_savings(self.db, site_id, settings.price_provider, start, now, fees))
        total = combine(stats, start)
        return {"savings": total.to_dict(), "cacheControl": cache_control(now, now)}

    def _write_status(self, sites: list[str]):
        status = {
            "timestamp": now_local().isoformat(),
            "results": self._last_results,
            "actions": {},
            "preview": {},
        }
        since = now_local() - timedelta(hours=1)
        for site_id in sites:
            actions = self.db.get_actions(site_id, since, now_local())
            if actions:
                status["actions"][site_id] = actions[-1].to_dict()
            try:
                status["preview"][site_id] = self.preview(site_id)
            except Exception as e:
                logger.warning("[%s] preview failed: %s", site_id, e)
        status["today"] = self.savings_today(sites)

        path = Path(config.system.status_path)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(status, f)
        os.replace(str(tmp_path), str(path))
        logger.debug("Status written to %s", path)

    def prune(self):
        self.db.prune_old_records(config.system.history_retention_days)

    def start(self):
        """Start the scheduler."""
        logger.info("Rate Arbitrage System starting")
        logger.info("Sites: %s", ", ".join(self.site_ids()) or "(none)")
        logger.info("Tariff: %s from %s", config.tariff.name, config.tariff.csv_path)
        logger.info("Scheduler interval: %ds, cycle timeout %.0fs",
                    config.system.scheduler_interval_s, config.system.cycle_timeout_s)
        if config.system.dry_run:
            logger.info("*** DRY RUN MODE: no mode changes will be sent ***")

        # Run first cycle immediately
        self.run_cycle()

        # Schedule recurring cycles
        interval_min = config.system.scheduler_interval_s / 60
        schedule.every(interval_min).minutes.do(self.run_cycle)

        # Prune old history daily
        schedule.every().day.at("04:00").do(self.prune)

        logger.info("Scheduler running. Press Ctrl+C to stop.")
        while self._running:
            schedule.run_pending()
            time.sleep(1)

    def stop(self):
        self._running = False
        logger.info("Shutting down")


def main():
    system = RateArbSystem()

    def signal_handler(sig, frame):
        system.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    system.start()


if __name__ == "__main__":
    main()
