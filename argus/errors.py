"""Exception types raised at Argus trust boundaries."""


class ArgusError(Exception):
    """Base class for Argus errors."""


class EventValidationError(ArgusError):
    """An inbound push event could not be turned into a known event."""


class ConfigError(ArgusError):
    """A configuration value is missing or malformed."""
