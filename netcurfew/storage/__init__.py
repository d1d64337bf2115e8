"""Durable storage for netcurfew."""

from netcurfew.storage.db import DeviceStore

__all__ = ["DeviceStore"]
