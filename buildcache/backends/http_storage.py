"""
Storage backend that forwards to another remote cache over HTTP, using the
same `/v8/artifacts` API that our own server exposes.
"""


import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, NoReturn, Optional, Tuple
from urllib.parse import quote

import aiohttp
from confuse import ConfigView
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from ..errors import (
    ArtifactNotFoundError,
    BackendError,
    InvalidKeyError,
    TransientError,
)
from .options import parse_options
from .storage_provider import StorageProvider, check_key

_TRANSIENT_STATUSES = frozenset({408, 425, 429})
"""
Client error statuses that might go away if the request is retried. All
server errors are also treated as transient.
"""


class HttpOptions(BaseModel):
    """
    Configuration for the HTTP backend.

    Attributes:
        base_url: Base URL of the remote cache.
        team: The team to store artifacts under when a key does not name
            one.
        token: Bearer token for the remote cache.
        timeout: Total timeout for existence checks, in seconds. Transfers
            only have a connection timeout, since artifacts can be large.
        headers: Extra headers to send with every request.
        chunk_size: Size of the chunks to produce when reading artifacts.

    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    base_url: str = Field(min_length=1)
    team: Optional[str] = Field(None, min_length=1)
    token: Optional[str] = None
    timeout: float = Field(30.0, gt=0)
    headers: Dict[str, str] = Field(default_factory=dict)
    chunk_size: int = Field(2**16, gt=0)


def _raise_for_status(response: aiohttp.ClientResponse, key: str) -> None:
    """
    Checks the status of a response from the remote cache.

    Args:
        response: The response.
        key: The artifact key that the request was for.

    Raises:
        `ArtifactNotFoundError` for a 404, `TransientError` for errors that
        might go away on retry, and `BackendError` for all other errors.

    """
    status = response.status
    if status < 400:
        return

    message = f"Remote cache returned {status} for '{key}': {response.reason}"
    if status == 404:
        raise ArtifactNotFoundError(f"Artifact '{key}' does not exist.")
    if status in _TRANSIENT_STATUSES or status >= 500:
        raise TransientError(message)
    raise BackendError(message)


def _raise_translated(error: Exception, key: str) -> NoReturn:
    """
    Translates an exception from `aiohttp` into one of our own.

    Args:
        error: The exception from `aiohttp`.
        key: The artifact key that the request was for.

    Raises:
        The translated exception.

    """
    if isinstance(
        error, (aiohttp.ClientConnectionError, asyncio.TimeoutError)
    ):
        raise TransientError(
            f"Could not reach remote cache for '{key}': {error}"
        ) from error
    raise BackendError(f"Remote cache error for '{key}': {error}") from error


class _ResponseIter:
    """
    Iterates over the body of a response, releasing the connection when
    done.
    """

    def __init__(
        self, response: aiohttp.ClientResponse, *, key: str, chunk_size: int
    ):
        self.__response = response
        self.__key = key
        self.__chunk_size = chunk_size

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self

    async def __anext__(self) -> bytes:
        try:
            chunk = await self.__response.content.read(self.__chunk_size)
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            self.__response.release()
            _raise_translated(error, self.__key)

        if not chunk:
            self.__response.release()
            raise StopAsyncIteration
        return chunk

    async def aclose(self) -> None:
        self.__response.release()


class HttpStorageProvider(StorageProvider):
    """
    Storage backend that forwards to another remote cache over HTTP.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        team: Optional[str] = None,
        timeout: float = 30.0,
        chunk_size: int = 2**16,
    ):
        """
        Args:
            session: The session to use. It is shared by all operations.
            team: The team to store artifacts under when a key does not
                name one.
            timeout: Total timeout for existence checks, in seconds.
            chunk_size: Size of the chunks to produce when reading artifacts.

        """
        self.__session = session
        self.__team = team
        self.__check_timeout = aiohttp.ClientTimeout(total=timeout)
        self.__transfer_timeout = aiohttp.ClientTimeout(
            total=None, sock_connect=timeout
        )
        self.__chunk_size = chunk_size

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls: StorageProvider.ClassType, config: ConfigView
    ) -> AsyncIterator[StorageProvider.ClassType]:
        options = parse_options(config, HttpOptions)

        headers = dict(options.headers)
        if options.token is not None:
            headers["Authorization"] = f"Bearer {options.token}"

        logger.info("Using remote cache at {}.", options.base_url)
        async with aiohttp.ClientSession(
            base_url=options.base_url, headers=headers
        ) as session:
            yield cls(
                session,
                team=options.team,
                timeout=options.timeout,
                chunk_size=options.chunk_size,
            )

    def __target(self, key: str) -> Tuple[str, Dict[str, str]]:
        """
        Maps an artifact key onto the remote API, which has a flat namespace
        per team. Keys are either `<team>/<hash>`, or just `<hash>` when a
        default team is configured.

        Args:
            key: The artifact key.

        Raises:
            `InvalidKeyError` if the key can't be stored remotely.

        Returns:
            The URL path and the query parameters for the artifact.

        """
        segments = check_key(key).split("/")
        if len(segments) == 2:
            team, artifact_hash = segments
        elif len(segments) == 1 and self.__team is not None:
            team, artifact_hash = self.__team, key
        else:
            raise InvalidKeyError(
                f"Key '{key}' can't be stored in a remote HTTP cache. It "
                "must be '<team>/<hash>', or '<hash>' with a team configured."
            )

        return f"/v8/artifacts/{quote(artifact_hash, safe='')}", dict(
            teamId=team
        )

    async def exists(self, key: str) -> bool:
        url, params = self.__target(key)
        try:
            async with self.__session.head(
                url, params=params, timeout=self.__check_timeout
            ) as response:
                if response.status == 404:
                    return False
                _raise_for_status(response, key)
                return True

        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            _raise_translated(error, key)

    async def _fetch(self, key: str) -> AsyncIterator[bytes]:
        url, params = self.__target(key)
        try:
            response = await self.__session.get(
                url, params=params, timeout=self.__transfer_timeout
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            _raise_translated(error, key)

        try:
            _raise_for_status(response, key)
        except Exception:
            response.release()
            raise

        return _ResponseIter(response, key=key, chunk_size=self.__chunk_size)

    async def _store(self, key: str, chunks: AsyncIterator[bytes]) -> None:
        url, params = self.__target(key)
        logger.debug("Uploading {} to remote cache.", key)
        try:
            async with self.__session.put(
                url,
                params=params,
                data=chunks,
                headers={"Content-Type": "application/octet-stream"},
                timeout=self.__transfer_timeout,
            ) as response:
                _raise_for_status(response, key)

        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            _raise_translated(error, key)
