from dataclasses import dataclass, field, fields
from datetime import datetime

from timeutil import from_iso, to_iso


@dataclass
class SystemAlarm:
    name: str
    description: str = ""
    code: str = ""
    created: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "code": self.code,
            "created": to_iso(self.created),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "SystemAlarm":
        return cls(
            name=d.get("name", ""),
            description=d.get("description", ""),
            code=d.get("code", ""),
            created=from_iso(d.get("created")),
        )


@dataclass
class Storm:
    ts_start: datetime
    ts_end: datetime
    description: str = ""

    def active_at(self, ts: datetime) -> bool:
        return self.ts_start <= ts < self.ts_end

    def to_dict(self) -> dict:
        return {
            "tsStart": to_iso(self.ts_start),
            "tsEnd": to_iso(self.ts_end),
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Storm":
        return cls(
            ts_start=from_iso(d["tsStart"]),
            ts_end=from_iso(d["tsEnd"]),
            description=d.get("description", ""),
        )


@dataclass
class SystemStatus:
    """Point-in-time snapshot of a site's battery, solar and grid.

    Power sign convention: battery_kw is positive while discharging and
    negative while charging; grid_kw is positive while importing.
    """

    timestamp: datetime
    battery_soc: float                    # percent, 0-100
    battery_capacity_kwh: float
    battery_kw: float = 0.0
    each_battery_soc: list[float] = field(default_factory=list)
    each_battery_kw: list[float] = field(default_factory=list)
    max_battery_charge_kw: float = 0.0
    max_battery_discharge_kw: float = 0.0
    solar_kw: float = 0.0
    grid_kw: float = 0.0
    home_kw: float = 0.0
    can_export_solar: bool = False
    can_export_battery: bool = False
    can_import_battery: bool = False
    elevated_min_battery_soc: bool = False
    battery_above_min_soc: bool = True
    emergency_mode: bool = False
    alarms: list[SystemAlarm] = field(default_factory=list)
    storms: list[Storm] = field(default_factory=list)

    @property
    def battery_kwh(self) -> float:
        return self.battery_capacity_kwh * self.battery_soc / 100.0

    def to_dict(self) -> dict:
        return {
            "timestamp": to_iso(self.timestamp),
            "batterySOC": self.battery_soc,
            "eachBatterySOC": list(self.each_battery_soc),
            "batteryKW": self.battery_kw,
            "eachBatteryKW": list(self.each_battery_kw),
            "batteryCapacityKWH": self.battery_capacity_kwh,
            "maxBatteryChargeKW": self.max_battery_charge_kw,
            "maxBatteryDischargeKW": self.max_battery_discharge_kw,
            "solarKW": self.solar_kw,
            "gridKW": self.grid_kw,
            "homeKW": self.home_kw,
            "canExportSolar": self.can_export_solar,
            "canExportBattery": self.can_export_battery,
            "canImportBattery": self.can_import_battery,
            "elevatedMinBatterySOC": self.elevated_min_battery_soc,
            "batteryAboveMinSOC": self.battery_above_min_soc,
            "emergencyMode": self.emergency_mode,
            "alarms": [a.to_dict() for a in self.alarms],
            "storms": [s.to_dict() for s in self.storms],
        }

    @classmethod
    def from_dict(cls, d: dict) -> "SystemStatus":
        return cls(
            timestamp=from_iso(d["timestamp"]),
            battery_soc=d.get("batterySOC", 0.0),
            each_battery_soc=list(d.get("eachBatterySOC") or []),
            battery_kw=d.get("batteryKW", 0.0),
            each_battery_kw=list(d.get("eachBatteryKW") or []),
            battery_capacity_kwh=d.get("batteryCapacityKWH", 0.0),
            max_battery_charge_kw=d.get("maxBatteryChargeKW", 0.0),
            max_battery_discharge_kw=d.get("maxBatteryDischargeKW", 0.0),
            solar_kw=d.get("solarKW", 0.0),
            grid_kw=d.get("gridKW", 0.0),
            home_kw=d.get("homeKW", 0.0),
            can_export_solar=d.get("canExportSolar", False),
            can_export_battery=d.get("canExportBattery", False),
            can_import_battery=d.get("canImportBattery", False),
            elevated_min_battery_soc=d.get("elevatedMinBatterySOC", False),
            battery_above_min_soc=d.get("batteryAboveMinSOC", True),
            emergency_mode=d.get("emergencyMode", False),
            alarms=[SystemAlarm.from_dict(a) for a in d.get("alarms") or []],
            storms=[Storm.from_dict(s) for s in d.get("storms") or []],
        )


@dataclass
class EnergyStats:
    """Energy flows for one clock hour (kWh) plus the SOC range seen in it."""

    ts_hour_start: datetime
    min_battery_soc: float = 0.0
    max_battery_soc: float = 0.0
    battery_charged_kwh: float = 0.0
    battery_used_kwh: float = 0.0
    solar_kwh: float = 0.0
    home_kwh: float = 0.0
    grid_export_kwh: float = 0.0
    grid_import_kwh: float = 0.0
    battery_to_home_kwh: float = 0.0
    battery_to_grid_kwh: float = 0.0
    solar_to_home_kwh: float = 0.0
    solar_to_battery_kwh: float = 0.0
    solar_to_grid_kwh: float = 0.0
    grid_to_home_kwh: float = 0.0
    grid_to_battery_kwh: float = 0.0

    def to_dict(self) -> dict:
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            out[f.name] = to_iso(value) if f.name == "ts_hour_start" else value
        return out

    @classmethod
    def from_dict(cls, d: dict) -> "EnergyStats":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in d.items() if k in known}
        kwargs["ts_hour_start"] = from_iso(d["ts_hour_start"])
        return cls(**kwargs)
