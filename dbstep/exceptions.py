# dbstep/exceptions.py
"""
Exceptions raised by dbstep.

All errors derive from DbStepError so a host runtime can catch them in one
place. Configuration and construction errors also derive from ValueError.
"""

from typing import Optional


class DbStepError(Exception):
    """Base class for all dbstep errors."""


class ConfigurationError(DbStepError, ValueError):
    """Unsupported operation, or a missing or invalid parameter."""


class ConstructionError(DbStepError, ValueError):
    """A table group cannot be turned into valid SQL."""


class ExecutionError(DbStepError):
    """
    The database rejected a statement.

    The driver exception is chained as ``__cause__``.
    """

    def __init__(self, message: str, sql: Optional[str] = None):
        super().__init__(message)
        self.sql = sql
