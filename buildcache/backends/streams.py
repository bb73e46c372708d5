"""
Streams for reading artifacts from and writing artifacts to a backend.

Backends don't implement streams themselves. They provide a coroutine that
opens the artifact for reading, and a coroutine that stores an artifact from
an async iterator of chunks. The classes here wrap those coroutines in tasks
and take care of buffering, backpressure, completion and cancellation.
"""


import asyncio
from typing import (
    AsyncIterator,
    Awaitable,
    Callable,
    Optional,
)

from loguru import logger

from ..errors import BackendError

FetchFunc = Callable[[], Awaitable[AsyncIterator[bytes]]]
"""
Opens an artifact, resolving to an iterator over its contents.
"""
StoreFunc = Callable[[AsyncIterator[bytes]], Awaitable[None]]
"""
Stores an artifact, returning only once the backend has persisted it.
"""
CloseCallback = Callable[[bool, Optional[BaseException]], None]
"""
Called when a reader is done. The arguments are whether the artifact was
read completely, and the error that occurred, if any.
"""

_END_OF_STREAM = object()
"""
Queue sentinel marking the end of the written data.
"""


def _consume_result(task: asyncio.Future) -> Optional[BaseException]:
    """
    Retrieves the exception from a finished task, so that asyncio doesn't
    complain about it never being retrieved.

    Args:
        task: The task, which must be done.

    Returns:
        The exception that the task raised, if any.

    """
    if task.cancelled():
        return None
    return task.exception()


class ArtifactReader:
    """
    Reads an artifact as a stream of chunks.

    The fetch starts as soon as the reader is created. The backend body is
    only pulled when the reader is iterated, so no data is lost no matter
    how long the consumer waits before it starts reading.

    Examples:
        ```
        async with provider.open_read("build-42") as reader:
            async for chunk in reader:
                output.write(chunk)
        ```
    """

    def __init__(
        self,
        key: str,
        fetch: FetchFunc,
        *,
        on_close: Optional[CloseCallback] = None,
    ):
        """
        Args:
            key: The key of the artifact being read.
            fetch: Coroutine function that opens the artifact. It must raise
                `ArtifactNotFoundError` if the artifact does not exist.
            on_close: Optional callback to run once the reader is done.

        Notes:
            This must be created while an event loop is running.

        """
        self.__key = key
        self.__on_close = on_close

        self.__fetch_task = asyncio.ensure_future(fetch())
        self.__chunks: Optional[AsyncIterator[bytes]] = None
        self.__finished = False

    @property
    def key(self) -> str:
        return self.__key

    def __finish(
        self, *, exhausted: bool, error: Optional[BaseException] = None
    ) -> None:
        """
        Marks the reader as done and runs the close callback exactly once.

        Args:
            exhausted: Whether the whole artifact was read.
            error: The error that ended the read, if any.

        """
        if self.__finished:
            return
        self.__finished = True

        if self.__on_close is not None:
            self.__on_close(exhausted, error)

    async def open(self) -> None:
        """
        Waits for the backend to start serving the artifact, without
        consuming any of it.

        Raises:
            `ArtifactNotFoundError` if the artifact does not exist, or
            whatever error the backend raised.

        """
        if self.__chunks is not None:
            return

        try:
            self.__chunks = await self.__fetch_task
        except Exception as error:
            self.__finish(exhausted=False, error=error)
            raise

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self

    async def __anext__(self) -> bytes:
        if self.__finished:
            raise StopAsyncIteration

        await self.open()
        try:
            return await self.__chunks.__anext__()
        except StopAsyncIteration:
            self.__finish(exhausted=True)
            raise
        except Exception as error:
            self.__finish(exhausted=False, error=error)
            raise

    async def read(self) -> bytes:
        """
        Reads the rest of the artifact into memory. Only use this when you
        know the artifact is small.

        Returns:
            The contents.

        """
        return b"".join([chunk async for chunk in self])

    async def aclose(self) -> None:
        """
        Stops reading, releasing the backend connection. Any fetch that is
        still in progress will be cancelled.
        """
        if not self.__fetch_task.done():
            logger.debug("Cancelling pending fetch of {}.", self.__key)
            self.__fetch_task.cancel()
            await asyncio.wait({self.__fetch_task})
        fetch_error = _consume_result(self.__fetch_task)

        chunks = self.__chunks
        if (
            chunks is None
            and fetch_error is None
            and not self.__fetch_task.cancelled()
        ):
            # The fetch finished, but nobody picked up the result.
            chunks = self.__fetch_task.result()

        close = getattr(chunks, "aclose", None)
        if close is not None:
            await close()

        self.__finish(exhausted=False)

    async def __aenter__(self) -> "ArtifactReader":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()


class ArtifactWriter:
    """
    Writes an artifact as a stream of chunks.

    The backend store runs as a single task that pulls chunks from a bounded
    queue. `write()` waits while the queue is full, so a slow backend slows
    down the producer instead of using up memory. The result of the store
    task is the result of the write as a whole: `close()` returns once the
    backend has persisted the artifact, and raises if it failed.

    Examples:
        ```
        async with provider.open_write("build-42") as writer:
            async for chunk in produce_artifact():
                await writer.write(chunk)
        # The artifact is now stored.
        ```
    """

    def __init__(
        self, key: str, store: StoreFunc, *, max_pending_chunks: int = 4
    ):
        """
        Args:
            key: The key of the artifact being written.
            store: Coroutine function that stores the artifact from an
                async iterator of chunks.
            max_pending_chunks: Maximum number of chunks that can be
                buffered before `write()` blocks.

        Notes:
            This must be created while an event loop is running.

        """
        self.__key = key
        self.__queue = asyncio.Queue(maxsize=max_pending_chunks)
        self.__closed = False

        self.__upload_task = asyncio.create_task(
            store(self.__iter_chunks()), name=f"upload-{key}"
        )

    @property
    def key(self) -> str:
        return self.__key

    @property
    def closed(self) -> bool:
        """
        Returns:
            True iff no more data can be written.

        """
        return self.__closed

    async def __iter_chunks(self) -> AsyncIterator[bytes]:
        """
        Yields:
            The chunks that were written, in order.

        """
        while True:
            chunk = await self.__queue.get()
            if chunk is _END_OF_STREAM:
                return
            yield chunk

    async def __put(self, item: object) -> None:
        """
        Adds an item to the queue, waiting for space if necessary.

        Args:
            item: The item to add.

        Raises:
            Whatever error the backend upload failed with, if it failed
            before it could accept the item.

        """
        if not self.__upload_task.done():
            put_task = asyncio.ensure_future(self.__queue.put(item))
            try:
                await asyncio.wait(
                    {put_task, self.__upload_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                if not put_task.done():
                    put_task.cancel()

            if put_task.done() and not put_task.cancelled():
                return

        # The upload finished before it took the data.
        self.__closed = True
        await self.__upload_task
        raise BackendError(
            f"Upload of '{self.__key}' finished before all data was written."
        )

    async def write(self, data: bytes) -> None:
        """
        Writes a chunk of data.

        Args:
            data: The data to write.

        Raises:
            `ValueError` if the writer is closed, or whatever error the
            backend upload failed with.

        """
        if self.__closed:
            raise ValueError(f"Writer for '{self.__key}' is closed.")
        if not data:
            return

        await self.__put(bytes(data))

    async def close(self) -> None:
        """
        Finishes the write, waiting until the backend has persisted it.

        Raises:
            Whatever error the backend upload failed with.

        """
        if not self.__closed:
            self.__closed = True
            await self.__put(_END_OF_STREAM)

        await self.__upload_task
        logger.debug("Backend confirmed upload of {}.", self.__key)

    async def abort(self) -> None:
        """
        Abandons the write. The backend upload is cancelled, which releases
        any resources it was holding, and nothing is stored.
        """
        self.__closed = True
        if not self.__upload_task.done():
            logger.debug("Aborting upload of {}.", self.__key)
            self.__upload_task.cancel()
            await asyncio.wait({self.__upload_task})

        error = _consume_result(self.__upload_task)
        if error is not None:
            logger.debug(
                "Upload of {} had already failed: {}", self.__key, error
            )

    async def __aenter__(self) -> "ArtifactWriter":
        return self

    async def __aexit__(
        self, exc_type: Optional[type], *_: object
    ) -> None:
        if exc_type is None:
            await self.close()
        else:
            await self.abort()
