"""
Exceptions shared by the cache coordinator and every storage backend.
"""


class CacheError(Exception):
    """
    Base class for all errors raised by the cache.
    """


class ConfigurationError(CacheError):
    """
    Raised when the configuration is invalid. This is always raised before
    any connection to a backend is attempted.
    """


class ArtifactNotFoundError(CacheError, KeyError):
    """
    Raised when the backend positively reports that an artifact does not
    exist.
    """


class TransientError(CacheError):
    """
    Raised for failures that might go away if the operation is retried, such
    as network errors, timeouts, or throttling.
    """


class BackendError(CacheError):
    """
    Raised for failures that will not go away on their own, such as
    authentication or permission problems.
    """


class UploadInProgressError(CacheError):
    """
    Raised when an upload is attempted for a key that already has an upload
    in progress.
    """


class InvalidKeyError(CacheError, ValueError):
    """
    Raised when an artifact key is not valid.
    """
