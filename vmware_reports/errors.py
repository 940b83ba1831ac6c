class SetupError(Exception):
    """Fatal problem found before any work is dispatched (connect, login, lookup)."""


class ConfigError(SetupError):
    """Missing or invalid configuration."""
