from abc import ABC, abstractmethod
from datetime import datetime

from ess.models import EnergyStats, SystemStatus


class EnergyStorageSystem(ABC):
    """A site's battery/solar hardware, behind whatever API the vendor offers.

    Adapters map BatteryMode/SolarMode onto vendor settings; NO_CHANGE
    leaves that half of the configuration untouched. Calls take the cycle
    deadline so network adapters can bound their timeouts.
    """

    name = "base"

    @abstractmethod
    def apply_settings(self, settings):
        """Validate and adopt site settings. Raises ConfigInvalidError."""

    @abstractmethod
    def get_status(self, deadline=None) -> SystemStatus:
        ...

    @abstractmethod
    def set_modes(self, battery_mode, solar_mode, deadline=None):
        """Apply both modes together; never one without the other."""

    @abstractmethod
    def get_energy_history(self, start: datetime, end: datetime, deadline=None) -> list[EnergyStats]:
        """Hourly energy stats for complete hours in [start, end)."""
