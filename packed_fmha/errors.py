"""
Failure taxonomy for the packed FMHA host layer.

Every failure is raised synchronously from the calling thread and terminates the
call. Nothing here is retried or downgraded to a default.
"""


class FmhaError(Exception):
    """Base class for all packed FMHA failures."""


class InvalidArgument(FmhaError, ValueError):
    """Shape / dtype / stride / device mismatch detected before any allocation."""


class UnsupportedConfiguration(FmhaError, RuntimeError):
    """Valid tensors, but the current device generation cannot execute the combination."""


class ConfigurationConflict(FmhaError, ValueError):
    """Derived geometry disagrees with a caller-supplied tensor (e.g. block mask shape)."""


__all__ = [
    "FmhaError",
    "InvalidArgument",
    "UnsupportedConfiguration",
    "ConfigurationConflict",
]
