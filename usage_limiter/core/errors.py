"""
Error taxonomy for limit resolution and usage accounting.

Every error is raised synchronously to the caller and never retried.
Each class also derives from the closest builtin so callers may catch
either the specific kind or the generic ValueError / LookupError.
"""


class UsageLimiterError(Exception):
    """Base class for all Usage Limiter errors."""


class InvalidArgument(UsageLimiterError, ValueError):
    """Malformed or out-of-range caller input."""


class InvalidAmount(UsageLimiterError, ValueError):
    """A usage mutation would break 0 <= used <= allowed or 0 <= extra_used <= extra."""

    def __init__(self, message: str = "Used amount should be positive and less than or equal to the allowed amount"):
        super().__init__(message)


class InvalidResetFrequency(UsageLimiterError, ValueError):
    """Unrecognized reset frequency token."""

    def __init__(self, frequency=None):
        self.frequency = frequency
        super().__init__(f"Invalid reset frequency: {frequency!r}")


class LimitDoesNotExist(UsageLimiterError, LookupError):
    """No limit definition matches the lookup."""

    def __init__(self, name=None, plan=None):
        self.name = name
        self.plan = plan
        if plan:
            message = f'Limit "{name}" with plan "{plan}" does not exist'
        else:
            message = f'Limit "{name}" does not exist'
        super().__init__(message)


class LimitNotSetOnModel(UsageLimiterError, LookupError):
    """The entity has no usage pivot for an existing limit definition."""

    def __init__(self, name=None, plan=None):
        self.name = name
        self.plan = plan
        if plan:
            message = f'Limit "{name}" with plan "{plan}" is not set on the model'
        else:
            message = f'Limit "{name}" is not set on the model'
        super().__init__(message)
