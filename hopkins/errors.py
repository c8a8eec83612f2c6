from __future__ import annotations


class HopkinsError(Exception):
    """Base error for hopkins."""


class ConfigError(HopkinsError):
    """Config validation error."""


class ParseError(ConfigError):
    """The configuration document could not be parsed at all."""


class ScheduleError(ConfigError):
    """A cron expression or schedule block is invalid."""


class QueueError(HopkinsError):
    """Dispatch queue lookup or state error."""
