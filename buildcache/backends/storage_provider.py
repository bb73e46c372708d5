"""
Common interface for all artifact storage backends.
"""


import abc
from typing import AsyncIterator, Optional

from ..errors import InvalidKeyError
from .injectable import Injectable
from .streams import ArtifactReader, ArtifactWriter, CloseCallback


def check_key(key: str) -> str:
    """
    Makes sure that an artifact key is valid. Keys are made of one or more
    segments separated by slashes, and must not be able to escape from the
    storage location of the backend.

    Args:
        key: The key to check.

    Raises:
        `InvalidKeyError` if the key is not valid.

    Returns:
        The same key.

    """
    if not isinstance(key, str) or not key:
        raise InvalidKeyError("Artifact key must be a non-empty string.")
    if "\0" in key or "\\" in key:
        raise InvalidKeyError(
            f"Artifact key {key!r} contains bad characters."
        )
    if key.startswith("/"):
        raise InvalidKeyError(f"Artifact key '{key}' must be relative.")

    for segment in key.split("/"):
        if segment in ("", ".", ".."):
            raise InvalidKeyError(
                f"Artifact key '{key}' contains an invalid segment."
            )

    return key


class StorageProvider(Injectable):
    """
    Common interface for all artifact storage backends.

    Subclasses implement `exists()`, `_fetch()` and `_store()`. The streaming
    behavior of `open_read()` and `open_write()` is shared by all backends.
    """

    MAX_PENDING_CHUNKS = 4
    """
    Number of chunks a writer will buffer before it starts applying
    backpressure to the producer.
    """

    @abc.abstractmethod
    async def exists(self, key: str) -> bool:
        """
        Checks whether an artifact is stored.

        Args:
            key: The key of the artifact.

        Raises:
            `TransientError` or `BackendError` if the backend could not
            answer. An error is never reported as the artifact being absent.

        Returns:
            True if the backend confirmed that the artifact exists, false if
            the backend confirmed that it does not.

        """

    @abc.abstractmethod
    async def _fetch(self, key: str) -> AsyncIterator[bytes]:
        """
        Opens an artifact for reading.

        Args:
            key: The key of the artifact.

        Raises:
            `ArtifactNotFoundError` if the artifact does not exist,
            or `TransientError` or `BackendError` for other failures.

        Returns:
            An iterator over the contents. If it has an `aclose()` method,
            that will be called when the reader is closed.

        """

    @abc.abstractmethod
    async def _store(self, key: str, chunks: AsyncIterator[bytes]) -> None:
        """
        Stores an artifact. It should not become visible to readers until
        all the data has been stored. If this is cancelled, any partial data
        must be cleaned up.

        Args:
            key: The key of the artifact.
            chunks: The contents of the artifact.

        Raises:
            `TransientError` or `BackendError` on failure.

        """

    def open_read(
        self, key: str, *, on_close: Optional[CloseCallback] = None
    ) -> ArtifactReader:
        """
        Opens an artifact for reading. The backend request is started
        immediately, but this returns without waiting for it.

        Args:
            key: The key of the artifact.
            on_close: Optional callback to run once the reader is done.

        Returns:
            The reader. Errors will be raised when it is read from.

        """
        check_key(key)
        return ArtifactReader(
            key, lambda: self._fetch(key), on_close=on_close
        )

    def open_write(self, key: str) -> ArtifactWriter:
        """
        Opens an artifact for writing. Any existing artifact with the same
        key will be replaced when the write completes successfully.

        Args:
            key: The key of the artifact.

        Returns:
            The writer. Closing it waits for the backend to confirm.

        """
        check_key(key)
        return ArtifactWriter(
            key,
            lambda chunks: self._store(key, chunks),
            max_pending_chunks=self.MAX_PENDING_CHUNKS,
        )
