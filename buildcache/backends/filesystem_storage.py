"""
Storage backend that keeps artifacts as files in a local directory.
"""


import asyncio
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, BinaryIO

from confuse import ConfigView
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from ..errors import ArtifactNotFoundError, BackendError, ConfigurationError
from .options import parse_options
from .storage_provider import StorageProvider, check_key

_PARTIAL_SUFFIX = ".partial"
"""
Suffix for files that are still being written.
"""


class FilesystemOptions(BaseModel):
    """
    Configuration for the filesystem backend.

    Attributes:
        root: The directory to store artifacts in.
        create: Whether to create the directory if it doesn't exist.
        chunk_size: Size of the chunks to produce when reading artifacts.

    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    root: Path
    create: bool = True
    chunk_size: int = Field(2**20, gt=0)


class FilesystemStorageProvider(StorageProvider):
    """
    Storage backend that keeps artifacts as files in a local directory.
    Blocking file operations are run in a worker thread.
    """

    def __init__(self, root: Path, *, chunk_size: int = 2**20):
        """
        Args:
            root: The directory to store artifacts in. It must exist.
            chunk_size: Size of the chunks to produce when reading artifacts.

        """
        self.__root = Path(root)
        self.__chunk_size = chunk_size

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls: StorageProvider.ClassType, config: ConfigView
    ) -> AsyncIterator[StorageProvider.ClassType]:
        options = parse_options(config, FilesystemOptions)

        root = options.root.expanduser()
        if options.create:
            root.mkdir(parents=True, exist_ok=True)
        if not root.is_dir():
            raise ConfigurationError(
                f"Artifact directory '{root}' does not exist."
            )

        logger.info("Storing artifacts in {}.", root)
        yield cls(root, chunk_size=options.chunk_size)

    def __path(self, key: str) -> Path:
        """
        Args:
            key: The artifact key.

        Returns:
            The path of the file for this artifact.

        """
        return self.__root.joinpath(*check_key(key).split("/"))

    async def exists(self, key: str) -> bool:
        path = self.__path(key)
        try:
            return await asyncio.to_thread(path.is_file)
        except OSError as error:
            raise BackendError(
                f"Could not check for artifact '{key}': {error}"
            ) from error

    async def _fetch(self, key: str) -> AsyncIterator[bytes]:
        path = self.__path(key)
        try:
            artifact_file = await asyncio.to_thread(path.open, "rb")
        except FileNotFoundError as error:
            raise ArtifactNotFoundError(
                f"Artifact '{key}' does not exist."
            ) from error
        except OSError as error:
            raise BackendError(
                f"Could not open artifact '{key}': {error}"
            ) from error

        return self.__read_chunks(artifact_file)

    async def __read_chunks(
        self, artifact_file: BinaryIO
    ) -> AsyncIterator[bytes]:
        """
        Reads a file in chunks, closing it when done.

        Args:
            artifact_file: The file to read.

        Yields:
            The chunks.

        """
        try:
            while chunk := await asyncio.to_thread(
                artifact_file.read, self.__chunk_size
            ):
                yield chunk
        finally:
            artifact_file.close()

    async def _store(self, key: str, chunks: AsyncIterator[bytes]) -> None:
        path = self.__path(key)

        def _open_temp_file() -> BinaryIO:
            path.parent.mkdir(parents=True, exist_ok=True)
            # The temporary file has to be on the same filesystem as the
            # target so that the final rename is atomic.
            return tempfile.NamedTemporaryFile(
                dir=path.parent,
                prefix=f".{path.name}.",
                suffix=_PARTIAL_SUFFIX,
                delete=False,
            )

        def _commit(temp_file: BinaryIO) -> None:
            temp_file.flush()
            os.fsync(temp_file.fileno())
            temp_file.close()
            os.replace(temp_file.name, path)

        def _discard(temp_file: BinaryIO) -> None:
            temp_file.close()
            Path(temp_file.name).unlink(missing_ok=True)

        try:
            temp_file = await asyncio.to_thread(_open_temp_file)
        except OSError as error:
            raise BackendError(
                f"Could not create artifact '{key}': {error}"
            ) from error

        logger.debug("Writing {} to {}.", key, temp_file.name)
        try:
            async for chunk in chunks:
                await asyncio.to_thread(temp_file.write, chunk)
            await asyncio.to_thread(_commit, temp_file)

        except OSError as error:
            await asyncio.to_thread(_discard, temp_file)
            raise BackendError(
                f"Could not write artifact '{key}': {error}"
            ) from error
        except BaseException:
            # Also covers cancellation, which must not leave partial files.
            await asyncio.shield(asyncio.to_thread(_discard, temp_file))
            raise

        logger.debug("Stored {} at {}.", key, path)
