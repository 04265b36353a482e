class ValidationError(Exception):
    """A proposed change broke one of the hard limits. Never retried."""


class DispatchError(Exception):
    """An actuator invocation failed at the transport level."""

    def __init__(self, message: str, code=None):
        super().__init__(message)
        self.code = code


class ConfigError(Exception):
    """The system config cannot be turned into targets or limits."""
