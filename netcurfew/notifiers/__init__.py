"""Notifiers package for sending alerts to external services."""

from netcurfew.notifiers.slack import SlackConfig, SlackNotifier, is_fatal

__all__ = ["SlackConfig", "SlackNotifier", "is_fatal"]
