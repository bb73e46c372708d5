"""
Tests for the `coordinator` module.
"""


import asyncio
from typing import AsyncIterator, List, Tuple

import pytest
from faker import Faker
from pytest_mock import MockFixture

from buildcache import coordinator
from buildcache.backends.memory_storage import MemoryStorageProvider
from buildcache.backends.tests.faker_providers import iter_chunks
from buildcache.config_view_mock import ConfigViewMock
from buildcache.errors import (
    BackendError,
    ConfigurationError,
    InvalidKeyError,
    TransientError,
    UploadInProgressError,
)

ArtifactState = coordinator.ArtifactState
Existence = coordinator.Existence


class _RecordingProvider(MemoryStorageProvider):
    """
    Memory backend that records when each store starts and ends.
    """

    def __init__(self) -> None:
        super().__init__()
        self.events: List[Tuple[str, str]] = []

    async def _store(self, key: str, chunks: AsyncIterator[bytes]) -> None:
        self.events.append(("start", key))
        try:
            await super()._store(key, chunks)
        finally:
            self.events.append(("end", key))


class _FailingProvider(MemoryStorageProvider):
    """
    Memory backend whose uploads fail after the first chunk.
    """

    async def _store(self, key: str, chunks: AsyncIterator[bytes]) -> None:
        async for _ in chunks:
            raise BackendError("Storage is full.")


async def _read_back(
    cache: coordinator.CacheCoordinator, key: str
) -> bytes:
    """
    Reads an artifact through the coordinator.

    Args:
        cache: The coordinator.
        key: The artifact key.

    Returns:
        The contents.

    """
    reader = await cache.lookup(key)
    assert reader is not None
    async with reader:
        return await reader.read()


class TestCacheCoordinator:
    """
    Tests for the `CacheCoordinator` class.
    """

    @pytest.mark.asyncio
    async def test_miss_then_hit(self) -> None:
        """
        Tests the normal flow of a build: a miss, an upload, then a hit.
        """
        # Arrange.
        provider = MemoryStorageProvider()
        cache = coordinator.CacheCoordinator(provider)
        key = "build-42"

        # Act and assert.
        # The first lookup should be a miss.
        assert await cache.lookup(key) is None
        assert cache.state(key) == ArtifactState.MISS

        await cache.upload(key, b"ABCDEFG")
        assert cache.state(key) == ArtifactState.COMPLETE

        # The second lookup should be a hit.
        reader = await cache.lookup(key)
        assert reader is not None
        assert cache.state(key) == ArtifactState.FETCHING
        async with reader:
            assert await reader.read() == b"ABCDEFG"
        assert cache.state(key) == ArtifactState.COMPLETE

        # Other keys should not be affected.
        missing = await cache.check("missing-key")
        assert missing.status == Existence.ABSENT

    @pytest.mark.asyncio
    async def test_upload_stream(self, faker: Faker) -> None:
        """
        Tests that we can upload from an async iterable of chunks.

        Args:
            faker: The fixture to use for generating fake data.

        """
        # Arrange.
        cache = coordinator.CacheCoordinator(MemoryStorageProvider())
        key = faker.artifact_key()
        chunks = faker.artifact_chunks(num_chunks=20)

        # Act.
        await cache.upload(key, iter_chunks(chunks))

        # Assert.
        assert await _read_back(cache, key) == b"".join(chunks)

    @pytest.mark.asyncio
    async def test_upload_session(self, faker: Faker) -> None:
        """
        Tests that we can upload by writing to a session.

        Args:
            faker: The fixture to use for generating fake data.

        """
        # Arrange.
        provider = MemoryStorageProvider()
        cache = coordinator.CacheCoordinator(provider)
        key = faker.artifact_key()
        chunks = faker.artifact_chunks()

        # Act.
        async with cache.upload_session(key) as session:
            assert session.key == key
            assert cache.state(key) == ArtifactState.UPLOADING
            assert cache.uploading(key)
            for chunk in chunks:
                await session.write(chunk)

        # Assert.
        # It should be stored as soon as the session is finished.
        assert await provider.exists(key)
        assert cache.state(key) == ArtifactState.COMPLETE
        assert not cache.uploading(key)

    @pytest.mark.asyncio
    async def test_never_written(self, faker: Faker) -> None:
        """
        Tests that a key that was never written is reported as absent.

        Args:
            faker: The fixture to use for generating fake data.

        """
        # Arrange.
        cache = coordinator.CacheCoordinator(MemoryStorageProvider())
        key = faker.artifact_key()

        # Act.
        result = await cache.check(key)

        # Assert.
        assert result == coordinator.ExistenceResult(
            key=key, status=Existence.ABSENT
        )
        assert cache.state(key) == ArtifactState.UNKNOWN

    @pytest.mark.asyncio
    async def test_check_present(self, faker: Faker) -> None:
        """
        Tests that `check` reports an artifact that exists.

        Args:
            faker: The fixture to use for generating fake data.

        """
        # Arrange.
        cache = coordinator.CacheCoordinator(MemoryStorageProvider())
        key = faker.artifact_key()
        await cache.upload(key, faker.binary(length=32))

        # Act.
        result = await cache.check(key)

        # Assert.
        assert result.status == Existence.PRESENT
        assert result.reason is None

    @pytest.mark.asyncio
    async def test_check_error(
        self, faker: Faker, mocker: MockFixture
    ) -> None:
        """
        Tests that `check` reports backend failures as errors, never as the
        artifact being absent.

        Args:
            faker: The fixture to use for generating fake data.
            mocker: The fixture to use for mocking.

        """
        # Arrange.
        provider = MemoryStorageProvider()
        mocker.patch.object(
            provider, "exists", side_effect=BackendError("Access denied.")
        )
        cache = coordinator.CacheCoordinator(provider)

        # Act.
        result = await cache.check(faker.artifact_key())

        # Assert.
        assert result.status == Existence.ERROR
        assert "Access denied" in result.reason

    @pytest.mark.asyncio
    async def test_lookup_error_is_not_a_miss(
        self, faker: Faker, mocker: MockFixture
    ) -> None:
        """
        Tests that `lookup` raises backend failures instead of reporting a
        miss.

        Args:
            faker: The fixture to use for generating fake data.
            mocker: The fixture to use for mocking.

        """
        # Arrange.
        provider = MemoryStorageProvider()
        mocker.patch.object(
            provider, "exists", side_effect=BackendError("Access denied.")
        )
        cache = coordinator.CacheCoordinator(provider)
        key = faker.artifact_key()

        # Act and assert.
        with pytest.raises(BackendError, match="Access denied"):
            await cache.lookup(key)

        assert cache.state(key) == ArtifactState.FAILED
        # Since it's not a transient error, it should not have been retried.
        provider.exists.assert_called_once_with(key)

    @pytest.mark.asyncio
    async def test_is_cached(self, faker: Faker, mocker: MockFixture) -> None:
        """
        Tests that `is_cached` reports hits and misses without starting to
        read the artifact.

        Args:
            faker: The fixture to use for generating fake data.
            mocker: The fixture to use for mocking.

        """
        # Arrange.
        provider = MemoryStorageProvider()
        cache = coordinator.CacheCoordinator(provider)
        present_key = faker.artifact_key()
        missing_key = faker.artifact_key()
        await cache.upload(present_key, faker.binary(length=64))
        open_read = mocker.spy(provider, "open_read")

        # Act.
        got_present = await cache.is_cached(present_key)
        got_missing = await cache.is_cached(missing_key)

        # Assert.
        assert got_present
        assert cache.state(present_key) == ArtifactState.HIT
        assert not got_missing
        assert cache.state(missing_key) == ArtifactState.MISS
        open_read.assert_not_called()

    @pytest.mark.asyncio
    async def test_is_cached_error(
        self, faker: Faker, mocker: MockFixture
    ) -> None:
        """
        Tests that `is_cached` raises backend failures instead of reporting
        a miss, after retrying transient ones.

        Args:
            faker: The fixture to use for generating fake data.
            mocker: The fixture to use for mocking.

        """
        # Arrange.
        provider = MemoryStorageProvider()
        mocker.patch.object(
            provider, "exists", side_effect=TransientError("Timed out.")
        )
        cache = coordinator.CacheCoordinator(
            provider, lookup_attempts=2, lookup_backoff_max=0
        )
        key = faker.artifact_key()

        # Act and assert.
        with pytest.raises(TransientError, match="Timed out"):
            await cache.is_cached(key)

        assert provider.exists.call_count == 2
        assert cache.state(key) == ArtifactState.FAILED

    @pytest.mark.asyncio
    async def test_transient_error_retried(
        self, faker: Faker, mocker: MockFixture
    ) -> None:
        """
        Tests that transient failures of existence checks are retried.

        Args:
            faker: The fixture to use for generating fake data.
            mocker: The fixture to use for mocking.

        """
        # Arrange.
        provider = MemoryStorageProvider()
        mocker.patch.object(
            provider,
            "exists",
            side_effect=[
                TransientError("Slow down."),
                TransientError("Slow down."),
                False,
            ],
        )
        cache = coordinator.CacheCoordinator(
            provider, lookup_attempts=3, lookup_backoff_max=0
        )

        # Act.
        reader = await cache.lookup(faker.artifact_key())

        # Assert.
        assert reader is None
        assert provider.exists.call_count == 3

    @pytest.mark.asyncio
    async def test_transient_error_exhausted(
        self, faker: Faker, mocker: MockFixture
    ) -> None:
        """
        Tests that a transient failure is raised once we run out of
        attempts.

        Args:
            faker: The fixture to use for generating fake data.
            mocker: The fixture to use for mocking.

        """
        # Arrange.
        provider = MemoryStorageProvider()
        mocker.patch.object(
            provider, "exists", side_effect=TransientError("Timed out.")
        )
        cache = coordinator.CacheCoordinator(
            provider, lookup_attempts=2, lookup_backoff_max=0
        )
        key = faker.artifact_key()

        # Act and assert.
        with pytest.raises(TransientError, match="Timed out"):
            await cache.lookup(key)
        assert provider.exists.call_count == 2
        assert cache.state(key) == ArtifactState.FAILED

        result = await cache.check(key)
        assert result.status == Existence.ERROR

    @pytest.mark.asyncio
    async def test_reject_concurrent_upload(self, faker: Faker) -> None:
        """
        Tests that a second upload of the same key is rejected while the
        first one is in progress.

        Args:
            faker: The fixture to use for generating fake data.

        """
        # Arrange.
        provider = MemoryStorageProvider()
        cache = coordinator.CacheCoordinator(provider)
        key = faker.artifact_key()
        first_data = faker.binary(length=64)

        # Act and assert.
        async with cache.upload_session(key) as session:
            await session.write(first_data)

            with pytest.raises(UploadInProgressError):
                await cache.upload(key, faker.binary(length=64))
            # The first upload should still own the key.
            assert cache.uploading(key)

        # Only the first upload should have been stored.
        assert await _read_back(cache, key) == first_data
        assert not cache.uploading(key)

        # Now that it's done, a new upload should be allowed.
        await cache.upload(key, b"again")

    @pytest.mark.asyncio
    async def test_queue_concurrent_upload(self, faker: Faker) -> None:
        """
        Tests that a second upload of the same key waits for the first one
        when the policy is to queue them.

        Args:
            faker: The fixture to use for generating fake data.

        """
        # Arrange.
        provider = _RecordingProvider()
        cache = coordinator.CacheCoordinator(
            provider, on_conflict=coordinator.ConflictPolicy.QUEUE
        )
        key = faker.artifact_key()
        second_data = faker.binary(length=64)
        first_may_finish = asyncio.Event()

        async def _first_data() -> AsyncIterator[bytes]:
            yield faker.binary(length=64)
            await first_may_finish.wait()
            yield faker.binary(length=64)

        # Act.
        first_upload = asyncio.create_task(cache.upload(key, _first_data()))
        await asyncio.sleep(0.01)
        second_upload = asyncio.create_task(cache.upload(key, second_data))
        await asyncio.sleep(0.01)

        # Assert.
        # The second upload should be waiting.
        assert not second_upload.done()
        assert provider.events == [("start", key)]

        first_may_finish.set()
        await asyncio.gather(first_upload, second_upload)

        # The uploads should not have overlapped.
        assert provider.events == [
            ("start", key),
            ("end", key),
            ("start", key),
            ("end", key),
        ]
        # The last upload wins.
        assert await _read_back(cache, key) == second_data
        assert not cache.uploading(key)

    @pytest.mark.asyncio
    async def test_different_keys_upload_concurrently(
        self, faker: Faker
    ) -> None:
        """
        Tests that uploads of different keys do not wait for each other.

        Args:
            faker: The fixture to use for generating fake data.

        """
        # Arrange.
        cache = coordinator.CacheCoordinator(MemoryStorageProvider())
        key1 = faker.artifact_key()
        key2 = faker.artifact_key()

        # Act.
        async with cache.upload_session(key1) as session1:
            async with cache.upload_session(key2) as session2:
                await session1.write(b"one")
                await session2.write(b"two")

        # Assert.
        assert await _read_back(cache, key1) == b"one"
        assert await _read_back(cache, key2) == b"two"

    @pytest.mark.asyncio
    async def test_backend_failure(self, faker: Faker) -> None:
        """
        Tests that a backend failure during an upload is reported, and that
        the key can be uploaded again afterwards.

        Args:
            faker: The fixture to use for generating fake data.

        """
        # Arrange.
        provider = _FailingProvider()
        cache = coordinator.CacheCoordinator(provider)
        key = faker.artifact_key()

        # Act and assert.
        with pytest.raises(BackendError, match="full"):
            await cache.upload(key, iter_chunks(faker.artifact_chunks()))

        assert cache.state(key) == ArtifactState.FAILED
        assert not cache.uploading(key)
        assert not await provider.exists(key)

        # It should not reject a new upload.
        with pytest.raises(BackendError, match="full"):
            await cache.upload(key, faker.binary(length=16))

    @pytest.mark.asyncio
    async def test_producer_failure(self, faker: Faker) -> None:
        """
        Tests that nothing is stored if the producer fails partway through.

        Args:
            faker: The fixture to use for generating fake data.

        """
        # Arrange.
        provider = MemoryStorageProvider()
        cache = coordinator.CacheCoordinator(provider)
        key = faker.artifact_key()

        async def _failing_data() -> AsyncIterator[bytes]:
            yield faker.binary(length=64)
            raise RuntimeError("Build failed.")

        # Act and assert.
        with pytest.raises(RuntimeError, match="Build failed"):
            await cache.upload(key, _failing_data())

        assert cache.state(key) == ArtifactState.FAILED
        assert not await provider.exists(key)
        assert not cache.uploading(key)

    @pytest.mark.asyncio
    async def test_cancel_upload(self, faker: Faker) -> None:
        """
        Tests that cancelling an upload stores nothing and releases the key.

        Args:
            faker: The fixture to use for generating fake data.

        """
        # Arrange.
        provider = MemoryStorageProvider()
        cache = coordinator.CacheCoordinator(provider)
        key = faker.artifact_key()

        async def _endless_data() -> AsyncIterator[bytes]:
            yield faker.binary(length=64)
            await asyncio.Event().wait()

        upload = asyncio.create_task(cache.upload(key, _endless_data()))
        await asyncio.sleep(0.01)
        assert cache.uploading(key)

        # Act.
        upload.cancel()
        with pytest.raises(asyncio.CancelledError):
            await upload

        # Assert.
        assert cache.state(key) == ArtifactState.FAILED
        assert not cache.uploading(key)
        assert not await provider.exists(key)

    @pytest.mark.asyncio
    async def test_reader_closed_early(self, faker: Faker) -> None:
        """
        Tests that the state goes back to a hit if the reader is closed
        before the whole artifact is read.

        Args:
            faker: The fixture to use for generating fake data.

        """
        # Arrange.
        cache = coordinator.CacheCoordinator(
            MemoryStorageProvider(chunk_size=8)
        )
        key = faker.artifact_key()
        await cache.upload(key, faker.binary(length=64))

        # Act.
        reader = await cache.lookup(key)
        async with reader:
            await reader.__anext__()

        # Assert.
        assert cache.state(key) == ArtifactState.HIT

    @pytest.mark.asyncio
    async def test_reader_failure(
        self, faker: Faker, mocker: MockFixture
    ) -> None:
        """
        Tests that the state is failed if the artifact can't be read.

        Args:
            faker: The fixture to use for generating fake data.
            mocker: The fixture to use for mocking.

        """
        # Arrange.
        provider = MemoryStorageProvider()
        cache = coordinator.CacheCoordinator(provider)
        key = faker.artifact_key()
        await cache.upload(key, faker.binary(length=64))

        mocker.patch.object(
            provider, "_fetch", side_effect=TransientError("Reset.")
        )

        # Act.
        reader = await cache.lookup(key)
        async with reader:
            with pytest.raises(TransientError):
                await reader.read()

        # Assert.
        assert cache.state(key) == ArtifactState.FAILED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", ["", "../escape", "/absolute"])
    async def test_invalid_key(self, key: str) -> None:
        """
        Tests that invalid keys are rejected by every operation.

        Args:
            key: The invalid key.

        """
        # Arrange.
        cache = coordinator.CacheCoordinator(MemoryStorageProvider())

        # Act and assert.
        with pytest.raises(InvalidKeyError):
            await cache.lookup(key)
        with pytest.raises(InvalidKeyError):
            await cache.check(key)
        with pytest.raises(InvalidKeyError):
            await cache.upload(key, b"data")

    @pytest.mark.asyncio
    async def test_state_eviction(self, faker: Faker) -> None:
        """
        Tests that only a limited number of key states are remembered.

        Args:
            faker: The fixture to use for generating fake data.

        """
        # Arrange.
        cache = coordinator.CacheCoordinator(
            MemoryStorageProvider(), max_tracked_keys=2
        )
        keys = [faker.artifact_key() for _ in range(3)]

        # Act.
        for key in keys:
            await cache.lookup(key)

        # Assert.
        # The oldest one should have been forgotten.
        assert cache.state(keys[0]) == ArtifactState.UNKNOWN
        assert cache.state(keys[1]) == ArtifactState.MISS
        assert cache.state(keys[2]) == ArtifactState.MISS

    def test_from_config(self) -> None:
        """
        Tests that `from_config` works.
        """
        # Arrange.
        provider = MemoryStorageProvider()
        mock_config = ConfigViewMock()
        mock_config.set_values(on_conflict="queue", lookup_attempts=5)

        # Act.
        cache = coordinator.CacheCoordinator.from_config(
            provider, mock_config
        )

        # Assert.
        assert cache.provider is provider

    @pytest.mark.parametrize(
        "values",
        [
            dict(on_conflict="sometimes"),
            dict(lookup_attempts=0),
            dict(max_tracked_keys=-1),
            dict(unknown_option=True),
        ],
        ids=("bad_policy", "no_attempts", "negative_keys", "unknown"),
    )
    def test_from_config_invalid(self, values: dict) -> None:
        """
        Tests that `from_config` rejects invalid configuration.

        Args:
            values: The invalid configuration.

        """
        # Arrange.
        mock_config = ConfigViewMock()
        mock_config.set_values(**values)

        # Act and assert.
        with pytest.raises(ConfigurationError):
            coordinator.CacheCoordinator.from_config(
                MemoryStorageProvider(), mock_config
            )


@pytest.mark.asyncio
async def test_open_cache(faker: Faker) -> None:
    """
    Tests that `open_cache` creates the backend and the coordinator.

    Args:
        faker: The fixture to use for generating fake data.

    """
    # Arrange.
    mock_config = ConfigViewMock()
    mock_config["storage"]["type"].as_str.return_value = "memory"
    mock_config["storage"]["config"].set_values()
    mock_config["cache"].set_values(on_conflict="reject")
    key = faker.artifact_key()

    # Act.
    async with coordinator.open_cache(mock_config) as cache:
        await cache.upload(key, b"data")

        # Assert.
        assert isinstance(cache.provider, MemoryStorageProvider)
        assert await _read_back(cache, key) == b"data"
