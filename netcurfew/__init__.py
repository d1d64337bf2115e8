"""netcurfew - Schedule-driven network access control for UniFi controllers."""

__version__ = "0.1.0"
