import logging
from datetime import datetime
from enum import Enum

from ess.models import SystemStatus
from optimizer.actions import BatteryMode, EXPLANATIONS, Reason, SolarMode
from optimizer.policy import ArbitragePolicy, Decision, PolicyInputs
from optimizer.settings import Settings

logger = logging.getLogger(__name__)


class SafetyState(Enum):
    NORMAL = "normal"
    PAUSED = "paused"
    EMERGENCY_MODE = "emergency mode"
    ALARMS_PRESENT = "alarms present"
    STORM_HEDGE = "storm hedge"


def evaluate_safety(settings: Settings, status: SystemStatus, now: datetime) -> SafetyState:
    """First matching condition wins: pause, emergency, alarms, storm."""
    if settings.pause:
        return SafetyState.PAUSED
    if status.emergency_mode:
        return SafetyState.EMERGENCY_MODE
    if status.alarms:
        return SafetyState.ALARMS_PRESENT
    if any(storm.active_at(now) for storm in status.storms):
        return SafetyState.STORM_HEDGE
    return SafetyState.NORMAL


def override_decision(state: SafetyState, inputs: PolicyInputs) -> Decision:
    """The fixed decision recorded instead of running the policy."""
    if state == SafetyState.PAUSED:
        reason, description = Reason.PAUSED, "Automation is paused"
    elif state == SafetyState.EMERGENCY_MODE:
        reason, description = Reason.EMERGENCY_MODE, "In emergency mode"
    elif state == SafetyState.ALARMS_PRESENT:
        reason, description = Reason.HAS_ALARMS, f"{len(inputs.status.alarms)} alarms present"
    elif state == SafetyState.STORM_HEDGE:
        reason, description = Reason.STORM_HEDGE, "Storm hedge active"
    else:
        raise ValueError(f"No override for safety state {state}")

    return Decision(
        battery_mode=BatteryMode.NO_CHANGE,
        solar_mode=SolarMode.NO_CHANGE,
        reason=reason,
        description=description,
        explanation=EXPLANATIONS[reason],
        current_price=inputs.current_price,
        fault=state != SafetyState.PAUSED,
        paused=state == SafetyState.PAUSED,
    )


class SafetyGate:
    """Wraps the policy; outside the Normal state the policy is never consulted."""

    def __init__(self, policy: ArbitragePolicy):
        self.policy = policy

    def decide(self, inputs: PolicyInputs) -> tuple[SafetyState, Decision]:
        state = evaluate_safety(inputs.settings, inputs.status, inputs.now)
        if state != SafetyState.NORMAL:
            logger.warning("Safety override: %s", state.value)
            return state, override_decision(state, inputs)
        return state, self.policy.decide(inputs)
