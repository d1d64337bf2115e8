"""Data models for netcurfew."""

from netcurfew.models.devices import (
    ActivityAction,
    ActivityLogEntry,
    BlockReason,
    BonusSession,
    BonusStatus,
    ClientDevice,
    DeviceStatus,
    ManagedDevice,
    Schedule,
    TimeWindow,
    normalize_mac,
)

__all__ = [
    "ActivityAction",
    "ActivityLogEntry",
    "BlockReason",
    "BonusSession",
    "BonusStatus",
    "ClientDevice",
    "DeviceStatus",
    "ManagedDevice",
    "Schedule",
    "TimeWindow",
    "normalize_mac",
]
