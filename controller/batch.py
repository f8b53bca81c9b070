import logging
from concurrent.futures import ThreadPoolExecutor, wait

import config
from controller.cycle import DecisionCycle
from controller.deadline import Deadline

logger = logging.getLogger(__name__)

# Extra time given to a site past its deadline before the batch stops waiting.
GRACE_S = 5.0


def run_sites(cycle: DecisionCycle, site_ids: list[str], timeout_s: float | None = None) -> dict[str, str]:
    """Run one decision cycle per site concurrently.

    Each site gets its own deadline; a failure in one site is logged and
    reported without affecting the others. Returns site_id -> outcome, where
    outcome is "success", a safety state, or "failed: <error>".
    """
    if not site_ids:
        return {}
    timeout_s = timeout_s if timeout_s is not None else config.system.cycle_timeout_s
    cycle.begin_batch()

    def run_one(site_id: str) -> str:
        try:
            return cycle.run(site_id, Deadline(timeout_s)).status
        except Exception as e:
            logger.error("[%s] cycle failed: %s", site_id, e, exc_info=True)
            return f"failed: {e}"

    pool = ThreadPoolExecutor(max_workers=len(site_ids), thread_name_prefix="site")
    futures = {site_id: pool.submit(run_one, site_id) for site_id in site_ids}
    wait(futures.values(), timeout=timeout_s + GRACE_S)
    # Stragglers keep running in the background; they are not waited for.
    pool.shutdown(wait=False)

    outcomes = {}
    for site_id, future in futures.items():
        if future.done():
            outcomes[site_id] = future.result()
        else:
            logger.error("[%s] cycle still running after %.0fs", site_id, timeout_s)
            outcomes[site_id] = "failed: deadline exceeded"

    failed = sum(1 for v in outcomes.values() if v.startswith("failed"))
    logger.info("Batch complete: %d sites, %d failed", len(site_ids), failed)
    return outcomes
