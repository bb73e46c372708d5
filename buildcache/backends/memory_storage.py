"""
Storage backend that keeps artifacts in memory. Mostly useful for testing
and for short-lived caches.
"""


from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable

from confuse import ConfigView
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from ..errors import ArtifactNotFoundError
from .options import parse_options
from .storage_provider import StorageProvider, check_key


class MemoryOptions(BaseModel):
    """
    Configuration for the memory backend.

    Attributes:
        chunk_size: Size of the chunks to produce when reading artifacts.

    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    chunk_size: int = Field(2**16, gt=0)


class MemoryStorageProvider(StorageProvider):
    """
    Storage backend that keeps artifacts in memory.
    """

    def __init__(self, chunk_size: int = MemoryOptions().chunk_size):
        """
        Args:
            chunk_size: Size of the chunks to produce when reading artifacts.

        """
        self.__chunk_size = chunk_size
        self.__artifacts: Dict[str, bytes] = {}

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls: StorageProvider.ClassType, config: ConfigView
    ) -> AsyncIterator[StorageProvider.ClassType]:
        options = parse_options(config, MemoryOptions)
        logger.info("Using in-memory artifact storage.")
        yield cls(chunk_size=options.chunk_size)

    @property
    def keys(self) -> Iterable[str]:
        """
        Returns:
            The keys of all the stored artifacts.

        """
        return self.__artifacts.keys()

    async def exists(self, key: str) -> bool:
        return check_key(key) in self.__artifacts

    async def _fetch(self, key: str) -> AsyncIterator[bytes]:
        data = self.__artifacts.get(key)
        if data is None:
            raise ArtifactNotFoundError(f"Artifact '{key}' does not exist.")

        async def _iter_chunks() -> AsyncIterator[bytes]:
            for offset in range(0, len(data), self.__chunk_size):
                yield data[offset : offset + self.__chunk_size]

        return _iter_chunks()

    async def _store(self, key: str, chunks: AsyncIterator[bytes]) -> None:
        parts = [chunk async for chunk in chunks]
        # Only make the artifact visible once it is complete.
        self.__artifacts[key] = b"".join(parts)
        logger.debug(
            "Stored {} ({} bytes) in memory.", key, len(self.__artifacts[key])
        )
