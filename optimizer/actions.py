from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum

from ess.models import SystemStatus
from pricing.base import Price
from timeutil import from_iso, to_iso


class BatteryMode(IntEnum):
    """Battery operating modes sent to the storage system.

    NO_CHANGE means "leave the hardware as it is" and is what gets sent
    when the hardware already satisfies the chosen mode.
    """

    NO_CHANGE = 0
    STANDBY = 1
    """Hold charge: the home runs from solar and grid, the battery does not discharge."""
    CHARGE_ANY = 2
    """Charge from solar and from the grid."""
    CHARGE_SOLAR = 3
    """Charge from solar only."""
    LOAD = -1
    """Self-consumption: the battery discharges to cover home load."""


class SolarMode(IntEnum):
    NO_CHANGE = 0
    NO_EXPORT = 1
    """Excess solar charges the battery or is curtailed, never exported."""
    ANY = 2
    """Excess solar may be exported to the grid."""


class Reason(Enum):
    """Why a mode was chosen. Every Action carries exactly one."""

    MISSING_BATTERY = "missingBattery"
    """No usable battery capacity reported."""

    ALWAYS_CHARGE_BELOW_THRESHOLD = "alwaysChargeBelowThreshold"
    """Current price at or below the always-charge threshold."""

    DEFICIT_CHARGE = "deficitCharge"
    """A deficit is coming and now is among the cheapest hours to cover it."""

    ARBITRAGE_CHARGE = "arbitrageCharge"
    """A later hour is pricier than now by more than the arbitrage margin."""

    DISCHARGE_BEFORE_CAPACITY = "dischargeBeforeCapacity"
    """Solar will fill the battery; use stored energy so it isn't curtailed."""

    DEFICIT_SAVE_FOR_PEAK = "deficitSaveForPeak"
    """A deficit is coming; hold charge for a pricier hour."""

    WAITING_TO_CHARGE = "waitingToCharge"
    """A cheaper or equal charge window comes before the pricier hour."""

    DISCHARGE_AT_PEAK = "dischargeAtPeak"
    """A deficit is coming but now is the most expensive hour; use the battery."""

    SUFFICIENT_BATTERY = "sufficientBattery"
    """No deficit or capacity crossing predicted."""

    PAUSED = "paused"
    EMERGENCY_MODE = "emergencyMode"
    HAS_ALARMS = "hasAlarms"
    STORM_HEDGE = "stormHedge"


# Short labels for each reason, shown next to the detailed description.
EXPLANATIONS = {
    Reason.MISSING_BATTERY: "No battery capacity",
    Reason.ALWAYS_CHARGE_BELOW_THRESHOLD: "Price below always-charge threshold",
    Reason.DEFICIT_CHARGE: "Charging now to cover a predicted deficit",
    Reason.ARBITRAGE_CHARGE: "Charging now to use at a pricier hour",
    Reason.DISCHARGE_BEFORE_CAPACITY: "Using battery before solar fills it",
    Reason.DEFICIT_SAVE_FOR_PEAK: "Saving battery for a pricier hour",
    Reason.WAITING_TO_CHARGE: "Waiting for a cheaper hour to charge",
    Reason.DISCHARGE_AT_PEAK: "Using battery at the peak price",
    Reason.SUFFICIENT_BATTERY: "Battery sufficient",
    Reason.PAUSED: "Automation paused",
    Reason.EMERGENCY_MODE: "Emergency mode",
    Reason.HAS_ALARMS: "Alarms present",
    Reason.STORM_HEDGE: "Storm hedge",
}


@dataclass
class Action:
    """One recorded decision for a site. Actions are append-only."""

    timestamp: datetime
    reason: Reason
    description: str
    battery_mode: BatteryMode = BatteryMode.NO_CHANGE
    solar_mode: SolarMode = SolarMode.NO_CHANGE
    applied_battery_mode: BatteryMode = BatteryMode.NO_CHANGE
    applied_solar_mode: SolarMode = SolarMode.NO_CHANGE
    current_price: Price | None = None
    future_price: Price | None = None
    deficit_at: datetime | None = None
    capacity_at: datetime | None = None
    system_status: SystemStatus | None = None
    dry_run: bool = False
    fault: bool = False
    paused: bool = False
    failed: bool = False
    error: str = ""
    explanation: str = field(default="")

    def __post_init__(self):
        if not self.explanation:
            self.explanation = EXPLANATIONS[self.reason]

    def to_dict(self) -> dict:
        return {
            "timestamp": to_iso(self.timestamp),
            "batteryMode": int(self.battery_mode),
            "solarMode": int(self.solar_mode),
            "appliedBatteryMode": int(self.applied_battery_mode),
            "appliedSolarMode": int(self.applied_solar_mode),
            "reason": self.reason.value,
            "description": self.description,
            "explanation": self.explanation,
            "currentPrice": self.current_price.to_dict() if self.current_price else None,
            "futurePrice": self.future_price.to_dict() if self.future_price else None,
            "deficitAt": to_iso(self.deficit_at),
            "capacityAt": to_iso(self.capacity_at),
            "systemStatus": self.system_status.to_dict() if self.system_status else None,
            "dryRun": self.dry_run,
            "fault": self.fault,
            "paused": self.paused,
            "failed": self.failed,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Action":
        return cls(
            timestamp=from_iso(d["timestamp"]),
            reason=Reason(d["reason"]),
            description=d.get("description", ""),
            explanation=d.get("explanation", ""),
            battery_mode=BatteryMode(d.get("batteryMode", 0)),
            solar_mode=SolarMode(d.get("solarMode", 0)),
            applied_battery_mode=BatteryMode(d.get("appliedBatteryMode", 0)),
            applied_solar_mode=SolarMode(d.get("appliedSolarMode", 0)),
            current_price=Price.from_dict(d["currentPrice"]) if d.get("currentPrice") else None,
            future_price=Price.from_dict(d["futurePrice"]) if d.get("futurePrice") else None,
            deficit_at=from_iso(d.get("deficitAt")),
            capacity_at=from_iso(d.get("capacityAt")),
            system_status=SystemStatus.from_dict(d["systemStatus"]) if d.get("systemStatus") else None,
            dry_run=d.get("dryRun", False),
            fault=d.get("fault", False),
            paused=d.get("paused", False),
            failed=d.get("failed", False),
            error=d.get("error", ""),
        )
