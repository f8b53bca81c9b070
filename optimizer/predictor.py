import logging
from dataclasses import dataclass, field
from datetime import datetime

from ess.models import SystemStatus
from forecasting.load_solar import Forecast
from optimizer.settings import Settings

logger = logging.getLogger(__name__)

_EPS = 1e-9


@dataclass
class Prediction:
    """When the battery is expected to run out or fill up.

    trajectory[i] is the simulated battery energy (kWh) at the end of
    forecast hour i. deficit_kwh is the energy the home would have needed
    from the battery below its reserve over the whole horizon.
    """

    deficit_at: datetime | None = None
    capacity_at: datetime | None = None
    deficit_kwh: float = 0.0
    capacity_kwh: float = 0.0
    min_kwh: float = 0.0
    start_kwh: float = 0.0
    trajectory: list[float] = field(default_factory=list)


class DeficitCapacityPredictor:
    """Steps the battery forward through the forecast, hour by hour.

    Each hour's net (solar minus load) is limited by the battery's charge
    and discharge rates where those are known. Discharge stops at the
    reserve (MinBatterySOC) and charge stops at full capacity. Only the
    first crossing of each kind is reported.
    """

    def predict(self, status: SystemStatus, settings: Settings, forecast: Forecast) -> Prediction:
        capacity = status.battery_capacity_kwh
        if capacity <= 0:
            return Prediction()

        min_kwh = capacity * settings.min_battery_soc / 100.0
        energy = capacity * status.battery_soc / 100.0
        result = Prediction(capacity_kwh=capacity, min_kwh=min_kwh, start_kwh=energy)

        for hour in forecast.hours:
            net = hour.solar_kwh - hour.load_kwh
            if net < 0:
                if status.max_battery_discharge_kw > 0:
                    net = max(net, -status.max_battery_discharge_kw)
                energy += net
                if energy <= min_kwh + _EPS:
                    result.deficit_kwh += max(0.0, min_kwh - energy)
                    energy = min_kwh
            elif net > 0:
                if status.max_battery_charge_kw > 0:
                    net = min(net, status.max_battery_charge_kw)
                energy += net
                if energy >= capacity - _EPS:
                    energy = capacity
                    if result.capacity_at is None:
                        result.capacity_at = hour.ts
            # Starting under the reserve counts too, even while solar tops it up.
            if energy <= min_kwh + _EPS and result.deficit_at is None:
                result.deficit_at = hour.ts
            result.trajectory.append(energy)

        logger.debug(
            "Predicted deficit_at=%s (%.2f kWh short) capacity_at=%s",
            result.deficit_at, result.deficit_kwh, result.capacity_at,
        )
        return result
