"""
Cadence exception hierarchy.

Every error raised by the daemon inherits from CadenceError so collaborators
(bot front end, dashboard) can catch one type at the boundary.

Usage:
    try:
        result = await queue.submit("daily-report", prompt)
    except InvocationError as e:
        # the assistant process could not be started
    except CadenceError as e:
        # anything else the core raised
"""


class CadenceError(Exception):
    """Base exception for all Cadence errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ConfigError(CadenceError):
    """Settings are invalid, unreadable, or required directories are missing."""

    pass


class StorageError(CadenceError):
    """A persisted record (settings, session, snapshot) could not be written."""

    pass


class ScheduleError(CadenceError):
    """A schedule expression is malformed or out of range."""

    def __init__(
        self,
        message: str,
        expression: str = "",
        field: str = "",
        details: dict | None = None,
    ):
        self.expression = expression
        self.field = field
        super().__init__(message, details)


class JobError(CadenceError):
    """A job document is malformed or a named job does not exist."""

    def __init__(self, message: str, job_name: str = "", details: dict | None = None):
        self.job_name = job_name
        super().__init__(message, details)


class SessionError(CadenceError):
    """The persisted session identity is unreadable or could not be archived."""

    pass


class InvocationError(CadenceError):
    """The external process could not be spawned at all."""

    def __init__(
        self,
        message: str,
        label: str = "",
        executable: str = "",
        details: dict | None = None,
    ):
        self.label = label
        self.executable = executable
        super().__init__(message, details)
