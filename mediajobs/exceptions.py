"""
Defines custom exceptions used throughout the job subsystem.

Configuration errors are permanent: a job that hits one is failed right away
and is never retried. None of these cross the JobManager's public API.
"""

class EngineConfigurationError(Exception):
    """Base class for errors that make a job impossible to start."""
    pass

class UnknownEngineError(EngineConfigurationError):
    """Raised when a job names an engine tag that is not in the engine table."""
    pass

class UnsupportedEngineError(EngineConfigurationError):
    """Raised for reserved engines that are known but not supported in this release."""
    pass

class InvalidJobOptionsError(EngineConfigurationError):
    """Raised when a job's options cannot be parsed for its engine."""
    pass
