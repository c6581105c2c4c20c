"""Storage exceptions."""

from typing import Optional


class StoreError(Exception):
    """Base exception for storage failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class NotFoundError(StoreError):
    """Raised when a requested record does not exist for the caller."""

    def __init__(self, message: str):
        super().__init__(message, 404)


class DuplicateSubscriptionError(StoreError):
    """Raised when a user subscribes to the same URL twice."""

    def __init__(self, url: str):
        super().__init__(f"Already subscribed to {url}", 409)
        self.url = url
