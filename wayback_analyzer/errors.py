from __future__ import annotations


class WaybackError(Exception):
    """Base class for every error raised by the analyzer."""


class ValidationError(WaybackError):
    pass


class FetchError(WaybackError):
    """Raised once the retrying fetcher gives up."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class NetworkError(FetchError):
    pass


class FetchTimeoutError(NetworkError):
    pass


class AllRelaysFailedError(NetworkError):
    def __init__(self, message: str, attempts: int = 0, empty_only: bool = False):
        super().__init__(message, attempts)
        # every attempt got a 2xx with an empty body
        self.empty_only = empty_only


class UpstreamError(FetchError):
    def __init__(self, message: str, status: int | None = None, attempts: int = 0):
        super().__init__(message, attempts)
        self.status = status


class ResponseTooLargeError(FetchError):
    pass


class CollectionError(WaybackError):
    pass


class PersistenceError(WaybackError):
    pass
