"""iCalendar-specific exceptions for error handling."""

from typing import Optional


class ICSError(Exception):
    """Base exception for iCalendar-related errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ICSFetchError(ICSError):
    """Exception raised when a calendar document cannot be fetched."""


class ICSParseError(ICSError):
    """Exception raised when calendar content cannot be parsed."""


class ICSAuthError(ICSError):
    """Exception raised when the remote server rejects our credentials."""


class ICSNetworkError(ICSError):
    """Exception raised for network-related fetch errors."""


class ICSTimeoutError(ICSError):
    """Exception raised when a fetch times out."""
