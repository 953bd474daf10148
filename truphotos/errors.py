from typing import Optional


class TruPhotosError(Exception):
    """
    Base class for every error raised by the session and catalog layers.
    """


class AuthError(TruPhotosError):
    """
    Bad credentials, or a non-2xx answer from the authenticate endpoint.
    """


class NetworkError(TruPhotosError):
    """
    Connection failure, or a non-2xx answer from a data endpoint.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RequestTimeoutError(TruPhotosError, TimeoutError):
    """
    A request exceeded its deadline. Not a NetworkError.
    """

    def __init__(self, message: str, timeout: Optional[float] = None):
        super().__init__(message)
        self.timeout = timeout


class PersistenceError(TruPhotosError):
    """
    One or more credential store reads/writes failed.
    `failures` maps each store key to the exception raised for it.
    """

    def __init__(self, message: str, failures: Optional[dict] = None):
        super().__init__(message)
        self.failures = failures or {}


class ValidationError(TruPhotosError):
    """
    Persisted or received data does not have the expected shape.
    """


class InvalidStateError(TruPhotosError):
    """
    An operation was called while the session is in the wrong state
    (e.g. selecting a library before a server).
    """
