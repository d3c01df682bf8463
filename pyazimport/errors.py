"""Exception types raised by the catalog import tool."""

from typing import Optional


class ImportToolError(Exception):
    """Base class for all import tool errors."""


class ConfigurationError(ImportToolError):
    """Invalid or missing configuration, raised before any connection is opened."""


class CatalogNotFoundError(ConfigurationError):
    """The catalog root directory does not exist."""


class CatalogReadError(ConfigurationError):
    """A catalog script could not be read or decoded."""


class DatabaseConnectionError(ImportToolError):
    """The target database could not be reached."""


class BatchExecutionError(ImportToolError):
    """A single batch failed on the server.

    ``number`` is the SQL Server error number when the driver exposes one.
    """

    def __init__(self, message: str, number: Optional[int] = None, timeout: bool = False):
        super().__init__(message)
        self.message = message
        self.number = number
        self.timeout = timeout


class ImportAborted(ImportToolError):
    """Stop-on-error run aborted after a fatal unit failure."""

    def __init__(self, message: str, unit=None):
        super().__init__(message)
        self.unit = unit
