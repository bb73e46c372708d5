"""
Coordinates cache lookups and uploads on top of a storage backend.

The coordinator decides whether a lookup is a hit or a miss, makes sure
that only one upload per key is in progress at a time, and tracks the state
of each artifact that it has recently dealt with.
"""


import asyncio
import enum
from collections import OrderedDict
from contextlib import asynccontextmanager
from functools import partial, singledispatch
from typing import AsyncIterable, AsyncIterator, Dict, Optional

from confuse import ConfigView
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from .backends import (
    ArtifactReader,
    ArtifactWriter,
    StorageProvider,
    check_key,
)
from .backends.backend_manager import storage_provider
from .backends.options import parse_options
from .errors import CacheError, TransientError, UploadInProgressError
from .type_helpers import ArtifactData


@enum.unique
class ArtifactState(enum.Enum):
    """
    What the coordinator last did with an artifact.
    """

    UNKNOWN = "unknown"
    CHECKING = "checking"
    HIT = "hit"
    MISS = "miss"
    FETCHING = "fetching"
    UPLOADING = "uploading"
    COMPLETE = "complete"
    FAILED = "failed"


@enum.unique
class Existence(enum.Enum):
    """
    Outcome of checking whether an artifact exists.
    """

    PRESENT = "present"
    ABSENT = "absent"
    ERROR = "error"
    """
    The backend could not tell us. This is never the same as absent.
    """


@enum.unique
class ConflictPolicy(enum.Enum):
    """
    What to do when an upload is requested for a key that is already being
    uploaded.
    """

    REJECT = "reject"
    """
    Fail immediately with `UploadInProgressError`.
    """
    QUEUE = "queue"
    """
    Wait for the first upload to finish, then upload again.
    """


class ExistenceResult(BaseModel):
    """
    Result of checking whether an artifact exists.

    Attributes:
        key: The artifact key.
        status: Whether it exists, or whether the check failed.
        reason: The error message, if the check failed.

    """

    model_config = ConfigDict(frozen=True)

    key: str
    status: Existence
    reason: Optional[str] = None


class CoordinatorOptions(BaseModel):
    """
    Configuration for the coordinator.

    Attributes:
        on_conflict: What to do with concurrent uploads of the same key.
        lookup_attempts: Number of attempts for existence checks that fail
            with transient errors.
        lookup_backoff_max: Maximum backoff between attempts, in seconds.
        max_tracked_keys: Number of keys to remember the state of.

    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    on_conflict: ConflictPolicy = ConflictPolicy.REJECT
    lookup_attempts: int = Field(3, gt=0)
    lookup_backoff_max: float = Field(2.0, ge=0)
    max_tracked_keys: int = Field(10000, gt=0)


class UploadSession:
    """
    A single upload that is in progress. The coordinator owns the key for
    as long as the session exists.
    """

    def __init__(self, key: str, writer: ArtifactWriter):
        self.__key = key
        self.__writer = writer

    @property
    def key(self) -> str:
        return self.__key

    async def write(self, data: bytes) -> None:
        """
        Writes the next chunk of the artifact. This waits if the backend is
        not keeping up.

        Args:
            data: The data to write.

        """
        await self.__writer.write(data)


@singledispatch
async def _iter_data(data: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
    """
    Iterates over artifact data in chunks.

    Args:
        data: The data.

    Yields:
        The chunks.

    """
    async for chunk in data:
        yield chunk


@_iter_data.register(bytes)
@_iter_data.register(bytearray)
@_iter_data.register(memoryview)
async def _(data: bytes) -> AsyncIterator[bytes]:
    yield bytes(data)


class CacheCoordinator:
    """
    Coordinates cache lookups and uploads on top of a storage backend.
    """

    def __init__(
        self,
        provider: StorageProvider,
        *,
        on_conflict: ConflictPolicy = ConflictPolicy.REJECT,
        lookup_attempts: int = 3,
        lookup_backoff_max: float = 2.0,
        max_tracked_keys: int = 10000,
    ):
        """
        Args:
            provider: The storage backend to use.
            on_conflict: What to do with concurrent uploads of the same key.
            lookup_attempts: Number of attempts for existence checks that
                fail with transient errors.
            lookup_backoff_max: Maximum backoff between attempts, in seconds.
            max_tracked_keys: Number of keys to remember the state of.

        """
        self.__provider = provider
        self.__on_conflict = on_conflict
        self.__lookup_attempts = lookup_attempts
        self.__lookup_backoff_max = lookup_backoff_max
        self.__max_tracked_keys = max_tracked_keys

        self.__states: OrderedDict[str, ArtifactState] = OrderedDict()
        # Locks that give exclusive ownership of a key for uploading, and
        # how many uploads are holding or waiting for each one.
        self.__upload_locks: Dict[str, asyncio.Lock] = {}
        self.__lock_users: Dict[str, int] = {}

    @classmethod
    def from_config(
        cls, provider: StorageProvider, config: ConfigView
    ) -> "CacheCoordinator":
        """
        Creates a coordinator based on the configuration.

        Args:
            provider: The storage backend to use.
            config: The `cache` configuration section.

        Returns:
            The coordinator.

        """
        options = parse_options(config, CoordinatorOptions)
        return cls(provider, **options.model_dump())

    @property
    def provider(self) -> StorageProvider:
        return self.__provider

    def state(self, key: str) -> ArtifactState:
        """
        Args:
            key: The artifact key.

        Returns:
            What the coordinator last did with this artifact.

        """
        return self.__states.get(key, ArtifactState.UNKNOWN)

    def uploading(self, key: str) -> bool:
        """
        Args:
            key: The artifact key.

        Returns:
            True iff there is an upload in progress for this key.

        """
        lock = self.__upload_locks.get(key)
        return lock is not None and lock.locked()

    def __set_state(self, key: str, state: ArtifactState) -> None:
        self.__states[key] = state
        self.__states.move_to_end(key)
        while len(self.__states) > self.__max_tracked_keys:
            self.__states.popitem(last=False)

    async def __exists(self, key: str) -> bool:
        """
        Checks whether an artifact exists, retrying transient failures.

        Args:
            key: The artifact key.

        Returns:
            Whether it exists.

        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransientError),
            wait=wait_random_exponential(
                multiplier=0.1, max=self.__lookup_backoff_max
            ),
            stop=stop_after_attempt(self.__lookup_attempts),
            after=lambda *_: logger.warning(
                "Retrying existence check for {}...", key
            ),
            reraise=True,
        ):
            with attempt:
                return await self.__provider.exists(key)

    async def check(self, key: str) -> ExistenceResult:
        """
        Checks whether an artifact exists, reporting backend failures in the
        result instead of raising them.

        Args:
            key: The artifact key.

        Returns:
            The result of the check.

        """
        check_key(key)
        try:
            present = await self.__exists(key)
        except CacheError as error:
            logger.warning("Existence check for {} failed: {}", key, error)
            return ExistenceResult(
                key=key, status=Existence.ERROR, reason=str(error)
            )

        status = Existence.PRESENT if present else Existence.ABSENT
        return ExistenceResult(key=key, status=status)

    def __reader_closed(
        self, key: str, exhausted: bool, error: Optional[BaseException]
    ) -> None:
        if error is not None:
            logger.error("Reading {} failed: {}", key, error)
            self.__set_state(key, ArtifactState.FAILED)
        elif exhausted:
            self.__set_state(key, ArtifactState.COMPLETE)
        else:
            # The consumer stopped early. The artifact is still there.
            self.__set_state(key, ArtifactState.HIT)

    async def is_cached(self, key: str) -> bool:
        """
        Checks whether an artifact is cached, without starting to read it.

        Args:
            key: The artifact key.

        Raises:
            `TransientError` or `BackendError` if the backend could not tell
            whether the artifact exists. This is never reported as a miss.

        Returns:
            True on a hit, false on a miss.

        """
        check_key(key)
        self.__set_state(key, ArtifactState.CHECKING)
        try:
            present = await self.__exists(key)
        except BaseException:
            self.__set_state(key, ArtifactState.FAILED)
            raise

        if present:
            logger.debug("Cache hit for {}.", key)
            self.__set_state(key, ArtifactState.HIT)
        else:
            logger.debug("Cache miss for {}.", key)
            self.__set_state(key, ArtifactState.MISS)
        return present

    async def lookup(self, key: str) -> Optional[ArtifactReader]:
        """
        Looks up an artifact in the cache.

        Args:
            key: The artifact key.

        Raises:
            `TransientError` or `BackendError` if the backend could not tell
            whether the artifact exists. This is never reported as a miss.

        Returns:
            A reader for the artifact on a hit, or None on a miss. On a miss,
            the caller is expected to produce the artifact and `upload()` it.

        """
        if not await self.is_cached(key):
            return None

        reader = self.__provider.open_read(
            key, on_close=partial(self.__reader_closed, key)
        )
        self.__set_state(key, ArtifactState.FETCHING)
        return reader

    @asynccontextmanager
    async def __own_key(self, key: str) -> AsyncIterator[None]:
        """
        Takes exclusive ownership of a key for uploading.

        Args:
            key: The artifact key.

        Raises:
            `UploadInProgressError` if the key is already owned and the
            conflict policy is to reject.

        """
        lock = self.__upload_locks.get(key)
        if lock is None:
            lock = self.__upload_locks[key] = asyncio.Lock()
            self.__lock_users[key] = 0

        if lock.locked() and self.__on_conflict == ConflictPolicy.REJECT:
            logger.warning("Rejecting duplicate upload of {}.", key)
            raise UploadInProgressError(
                f"An upload of '{key}' is already in progress."
            )

        self.__lock_users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self.__lock_users[key] -= 1
            if self.__lock_users[key] == 0:
                del self.__lock_users[key]
                del self.__upload_locks[key]

    @asynccontextmanager
    async def upload_session(self, key: str) -> AsyncIterator[UploadSession]:
        """
        Starts an upload. The artifact is stored when the context manager
        exits normally, and discarded if it exits with an error.

        Args:
            key: The artifact key.

        Raises:
            `UploadInProgressError` if there is already an upload for this
            key and the conflict policy is to reject. Otherwise, whatever
            error the backend failed with.

        Yields:
            The session to write the artifact to.

        """
        check_key(key)
        async with self.__own_key(key):
            self.__set_state(key, ArtifactState.UPLOADING)
            logger.debug("Starting upload of {}.", key)

            try:
                async with self.__provider.open_write(key) as writer:
                    yield UploadSession(key, writer)
            except BaseException as error:
                self.__set_state(key, ArtifactState.FAILED)
                logger.error("Upload of {} failed: {!r}", key, error)
                raise

            self.__set_state(key, ArtifactState.COMPLETE)
            logger.info("Uploaded {}.", key)

    async def upload(self, key: str, data: ArtifactData) -> None:
        """
        Uploads an artifact, returning once the backend has stored it.

        Args:
            key: The artifact key.
            data: The contents, either as bytes or as an async iterable of
                chunks. Chunks are only pulled as fast as the backend
                accepts them.

        """
        async with self.upload_session(key) as session:
            async for chunk in _iter_data(data):
                await session.write(chunk)


@asynccontextmanager
async def open_cache(config: ConfigView) -> AsyncIterator[CacheCoordinator]:
    """
    Creates the storage backend and a coordinator for it. The backend and
    its connections live until the context manager exits.

    Args:
        config: The root configuration view.

    Yields:
        The coordinator.

    """
    async with storage_provider(config["storage"]) as provider:
        yield CacheCoordinator.from_config(provider, config["cache"])
