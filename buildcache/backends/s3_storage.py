"""
Storage backend for object stores that follow the S3 API.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, NoReturn, Optional

from aiobotocore.client import AioBaseClient
from aiobotocore.response import StreamingBody
from aiobotocore.session import get_session
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
)
from confuse import ConfigView
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from ..errors import ArtifactNotFoundError, BackendError, TransientError
from .options import parse_options
from .storage_provider import StorageProvider

_MIN_PART_SIZE = 5 * 2**20
"""
S3 rejects multi-part uploads where any part but the last is smaller than
this.
"""

_NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})
"""
Error codes that mean that an object does not exist.
"""
_TRANSIENT_CODES = frozenset(
    {
        "RequestTimeout",
        "RequestTimeoutException",
        "SlowDown",
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "InternalError",
        "ServiceUnavailable",
    }
)
"""
Error codes for failures that might succeed if retried.
"""


class S3Options(BaseModel):
    """
    Configuration for the S3 backend.

    Attributes:
        bucket: The bucket to store artifacts in.
        endpoint_url: Custom endpoint, for S3-compatible services.
        region_name: The region of the bucket.
        access_key_id: Access key. If this or the secret are not set, the
            SDK will find credentials on its own.
        secret_access_key: Secret key.
        session_token: Optional session token for temporary credentials.
        force_path_style: Use path-style addressing, which many
            S3-compatible services require.
        key_prefix: Prefix to add to every object key.
        part_size: Size of the parts to use for multi-part uploads.
        max_concurrent_uploads: Maximum number of parts to upload at once.
        client_options: Passed through to the client unchanged.

    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    bucket: str = Field(min_length=1)
    endpoint_url: Optional[str] = None
    region_name: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    session_token: Optional[str] = None
    force_path_style: bool = False
    key_prefix: str = ""
    part_size: int = Field(8 * 2**20, ge=_MIN_PART_SIZE)
    max_concurrent_uploads: int = Field(5, gt=0)
    client_options: Dict[str, Any] = Field(default_factory=dict)

    def client_kwargs(self) -> Dict[str, Any]:
        """
        Returns:
            The keyword arguments to use for creating the S3 client.

        """
        kwargs: Dict[str, Any] = {}
        if self.access_key_id and self.secret_access_key:
            kwargs.update(
                aws_access_key_id=self.access_key_id,
                aws_secret_access_key=self.secret_access_key,
                aws_session_token=self.session_token,
            )
        if self.region_name:
            kwargs["region_name"] = self.region_name
        if self.endpoint_url:
            kwargs["endpoint_url"] = self.endpoint_url
        if self.force_path_style:
            kwargs["config"] = Config(s3=dict(addressing_style="path"))

        kwargs.update(self.client_options)
        return kwargs


def _extract_error_code(error: ClientError) -> Optional[str]:
    """
    Extracts the error code from a `ClientError` exception.

    Args:
        error: The exception.

    Returns:
        The extracted error code, or None if there was none.

    """
    error_info = error.response.get("Error", {})
    return error_info.get("Code")


def _raise_translated(error: Exception, key: str) -> NoReturn:
    """
    Translates an exception from the S3 client into one of our own.

    Args:
        error: The exception from the client.
        key: The artifact key that the operation was for.

    Raises:
        The translated exception.

    """
    if isinstance(error, ClientError):
        code = _extract_error_code(error)
        status = error.response.get("ResponseMetadata", {}).get(
            "HTTPStatusCode", 0
        )
        if code in _NOT_FOUND_CODES:
            raise ArtifactNotFoundError(
                f"Artifact '{key}' does not exist."
            ) from error
        if code in _TRANSIENT_CODES or status >= 500:
            raise TransientError(f"S3 error for '{key}': {error}") from error
        raise BackendError(f"S3 error for '{key}': {error}") from error

    if isinstance(
        error, (BotoConnectionError, HTTPClientError, asyncio.TimeoutError)
    ):
        raise TransientError(
            f"Could not reach S3 for '{key}': {error}"
        ) from error
    raise BackendError(f"S3 error for '{key}': {error}") from error


class _MultiPartUploadHelper:
    """
    Helper class to deal with multi-part uploads.
    """

    def __init__(self, client: AioBaseClient, *, bucket: str, key: str):
        """
        Args:
            client: The S3 client to use.
            bucket: The bucket that we are uploading to.
            key: The object key that we are uploading.

        Notes:
            This is not meant to be used directly. Use `create()` instead.
        """

        self.__client = client
        self.__bucket = bucket
        self.__key = key
        self.__upload_id = None

        # Uploads that are still in-progress.
        self.__pending_upload_tasks = set()
        # Maps part numbers to entity tags, for finished parts.
        self.__part_tags = {}
        # Maps pending tasks to corresponding part numbers.
        self.__tasks_to_part_numbers = {}
        # Keeps track of the next part number.
        self.__part_number = 1

    @classmethod
    @asynccontextmanager
    async def create(
        cls, client: AioBaseClient, *, bucket: str, key: str
    ) -> AsyncIterator["_MultiPartUploadHelper"]:
        """
        Context manager that creates a new instance. The upload is completed
        when the context manager exits normally, and aborted if it exits
        with an error, including cancellation.

        Args:
            client: The S3 client to use.
            bucket: The bucket that we are uploading to.
            key: The object key that we are uploading.

        Yields:
            The new instance that it created.

        """
        uploader = cls(client, bucket=bucket, key=key)
        await uploader.__start_upload()

        try:
            yield uploader
            await uploader.finish()
        except BaseException:
            # Make sure storage is freed if there is an error.
            await asyncio.shield(uploader.abort())
            raise

    async def __start_upload(self) -> None:
        """
        Starts a new multi-part upload.
        """
        logger.debug("Starting multi-part upload for {}.", self.__key)

        response = await self.__client.create_multipart_upload(
            Bucket=self.__bucket, Key=self.__key
        )
        self.__upload_id = response["UploadId"]

        logger.debug("Got upload ID: {}", self.__upload_id)

    def add_data(self, data: bytes) -> None:
        """
        Starts uploading a new part of the object.

        Args:
            data: The data to add.

        """
        task = asyncio.create_task(
            self.__client.upload_part(
                Body=data,
                Bucket=self.__bucket,
                Key=self.__key,
                UploadId=self.__upload_id,
                PartNumber=self.__part_number,
            )
        )
        self.__pending_upload_tasks.add(task)

        self.__tasks_to_part_numbers[task] = self.__part_number
        self.__part_number += 1

    async def wait_for_upload(self) -> None:
        """
        Waits for at least one pending upload to finish before returning.

        Raises:
            The error from the first part upload that failed.

        """
        done, pending = await asyncio.wait(
            self.__pending_upload_tasks, return_when=asyncio.FIRST_COMPLETED
        )
        self.__pending_upload_tasks = pending
        logger.debug(
            "Finished waiting, still have {} pending uploads.", len(pending)
        )

        failure = None
        for task in done:
            part_number = self.__tasks_to_part_numbers.pop(task)
            if task.exception() is not None:
                failure = task.exception()
                continue
            self.__part_tags[part_number] = task.result()["ETag"]

        if failure is not None:
            raise failure

    async def finish(self) -> None:
        """
        Finishes the upload, waiting for all parts to complete.

        Notes:
            This will be called automatically when exiting the context manager.

        """
        while self.num_pending > 0:
            await self.wait_for_upload()

        # It insists that the parts be ordered by part number.
        parts = [
            {"ETag": tag, "PartNumber": number}
            for number, tag in sorted(self.__part_tags.items())
        ]

        logger.debug("Finalizing upload of {}.", self.__key)
        await self.__client.complete_multipart_upload(
            Bucket=self.__bucket,
            Key=self.__key,
            UploadId=self.__upload_id,
            MultipartUpload=dict(Parts=parts),
        )

    async def abort(self) -> None:
        """
        Aborts the upload.

        Notes:
            This will be called automatically by the context manager in case
            of error.

        """
        # Stop any parts that are still uploading first, so that we can
        # guarantee that all storage will be freed.
        logger.debug("Aborting upload of {}.", self.__key)
        for task in self.__pending_upload_tasks:
            task.cancel()
        if self.__pending_upload_tasks:
            await asyncio.wait(self.__pending_upload_tasks)
        self.__pending_upload_tasks = set()

        await self.__client.abort_multipart_upload(
            Bucket=self.__bucket,
            Key=self.__key,
            UploadId=self.__upload_id,
        )

    @property
    def num_pending(self) -> int:
        """
        Returns:
            The number of currently-pending uploads.

        """
        return len(self.__pending_upload_tasks)


class _SafeObjectIter:
    """
    `aiobotocore` gets mad if we don't properly close response handles,
    so this class exists in order to make sure they get closed.

    """

    _DEFAULT_CHUNK_SIZE = 2**20
    """
    Default chunk size to use for the output iterator.
    """

    def __init__(
        self,
        response: StreamingBody,
        *,
        key: str,
        chunk_size: int = _DEFAULT_CHUNK_SIZE,
    ):
        self.__response = response
        self.__key = key
        self.__chunk_size = chunk_size
        self.__closed = False

    def __del__(self):
        # Ensure, at all costs, that the response is closed.
        self.close()

    def close(self) -> None:
        if not self.__closed:
            self.__closed = True
            self.__response.close()

    async def aclose(self) -> None:
        self.close()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self

    async def __anext__(self) -> bytes:
        if self.__closed:
            raise StopAsyncIteration

        try:
            chunk = await self.__response.read(self.__chunk_size)
        except Exception as error:
            self.close()
            _raise_translated(error, self.__key)

        if not chunk:
            self.close()
            raise StopAsyncIteration
        return chunk


class S3StorageProvider(StorageProvider):
    """
    Storage backend for object stores that follow the S3 API.
    """

    def __init__(
        self,
        client: AioBaseClient,
        *,
        bucket: str,
        key_prefix: str = "",
        part_size: int = 8 * 2**20,
        max_concurrent_uploads: int = 5,
    ):
        """
        Args:
            client: The S3 client to use. It is shared by all operations.
            bucket: The bucket to store artifacts in.
            key_prefix: Prefix to add to every object key.
            part_size: Size of the parts to use for multi-part uploads.
                Artifacts smaller than this are uploaded in one request.
            max_concurrent_uploads: Maximum number of parts to upload at
                once.

        """
        self.__client = client
        self.__bucket = bucket
        self.__key_prefix = key_prefix
        self.__part_size = part_size
        self.__max_concurrent_uploads = max_concurrent_uploads

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls: StorageProvider.ClassType, config: ConfigView
    ) -> AsyncIterator[StorageProvider.ClassType]:
        # Validate everything before we try to connect.
        options = parse_options(config, S3Options)

        logger.info(
            "Connecting to S3-compatible object store at {}, bucket {}.",
            options.endpoint_url or "the default endpoint",
            options.bucket,
        )

        session = get_session()
        async with session.create_client(
            "s3", **options.client_kwargs()
        ) as client:
            yield cls(
                client,
                bucket=options.bucket,
                key_prefix=options.key_prefix,
                part_size=options.part_size,
                max_concurrent_uploads=options.max_concurrent_uploads,
            )

    def __object_key(self, key: str) -> str:
        return f"{self.__key_prefix}{key}"

    async def exists(self, key: str) -> bool:
        try:
            await self.__client.head_object(
                Bucket=self.__bucket, Key=self.__object_key(key)
            )
            return True

        except (BotoCoreError, ClientError, asyncio.TimeoutError) as error:
            if (
                isinstance(error, ClientError)
                and _extract_error_code(error) in _NOT_FOUND_CODES
            ):
                # This is the only case where the object is confirmed absent.
                return False
            _raise_translated(error, key)

    async def _fetch(self, key: str) -> AsyncIterator[bytes]:
        try:
            response = await self.__client.get_object(
                Bucket=self.__bucket, Key=self.__object_key(key)
            )
        except (BotoCoreError, ClientError, asyncio.TimeoutError) as error:
            _raise_translated(error, key)

        return _SafeObjectIter(response["Body"], key=key)

    async def __put_object(self, key: str, data: bytes) -> None:
        """
        Uploads an artifact in a single request.

        Args:
            key: The artifact key.
            data: The complete artifact.

        """
        logger.debug("Uploading {} ({} bytes) in one part.", key, len(data))
        await self.__client.put_object(
            Body=data, Bucket=self.__bucket, Key=self.__object_key(key)
        )

    async def __multi_part_upload(
        self, key: str, first_part: bytes, chunks: AsyncIterator[bytes]
    ) -> None:
        """
        Uploads an artifact in multiple parts.

        Args:
            key: The artifact key.
            first_part: The first part, which has already been read.
            chunks: The rest of the artifact.

        """
        async with _MultiPartUploadHelper.create(
            self.__client, bucket=self.__bucket, key=self.__object_key(key)
        ) as uploader:
            uploader.add_data(first_part)

            buffer = bytearray()
            async for chunk in chunks:
                buffer += chunk
                if len(buffer) < self.__part_size:
                    continue

                while uploader.num_pending >= self.__max_concurrent_uploads:
                    # Wait for some uploads to finish.
                    await uploader.wait_for_upload()
                uploader.add_data(bytes(buffer))
                buffer.clear()

            if buffer:
                uploader.add_data(bytes(buffer))

    async def _store(self, key: str, chunks: AsyncIterator[bytes]) -> None:
        logger.info("Uploading artifact {}.", key)

        # Wait until we have a whole part before deciding how to upload, so
        # that small artifacts don't need a multi-part upload.
        first_part = bytearray()
        async for chunk in chunks:
            first_part += chunk
            if len(first_part) >= self.__part_size:
                break

        try:
            if len(first_part) < self.__part_size:
                await self.__put_object(key, bytes(first_part))
            else:
                await self.__multi_part_upload(key, bytes(first_part), chunks)
        except (BotoCoreError, ClientError, asyncio.TimeoutError) as error:
            _raise_translated(error, key)
