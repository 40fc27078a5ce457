from __future__ import annotations


class AutohidroError(Exception):
    """Base class for every error raised by the scheduling engine."""


class ConfigurationError(AutohidroError):
    """A rule is invalid and was rejected before reaching the timer layer."""


class ActuationError(AutohidroError):
    """An actuator write failed. State is not advanced and nothing is retried."""


class SensingError(AutohidroError):
    """A sensor sample failed or lacked the requested metric."""


class PersistenceError(AutohidroError):
    """The rule/log store failed."""


class RuleLoadError(PersistenceError):
    """Rules could not be loaded at init; the scheduler cannot start."""
