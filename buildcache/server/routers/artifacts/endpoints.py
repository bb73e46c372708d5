"""
Endpoints for storing and retrieving artifacts.
"""


from typing import Annotated, AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import StreamingResponse
from loguru import logger

from ....backends import ArtifactReader
from ....coordinator import CacheCoordinator
from ...dependencies import artifact_key, coordinator, translate_errors
from .schemas import PutArtifactResponse, StatusResponse

router = APIRouter(prefix="/v8/artifacts", tags=["artifacts"])

ArtifactKey = Annotated[str, Depends(artifact_key)]
Coordinator = Annotated[CacheCoordinator, Depends(coordinator)]


async def _stream_artifact(reader: ArtifactReader) -> AsyncIterator[bytes]:
    """
    Streams an artifact into a response, making sure the reader is closed
    even if the client goes away.

    Args:
        reader: The reader for the artifact.

    Yields:
        The chunks of the artifact.

    """
    async with reader:
        async for chunk in reader:
            yield chunk


@router.get("/status", response_model=StatusResponse)
async def get_status() -> StatusResponse:
    """
    Reports whether caching is enabled.

    Returns:
        The status.

    """
    return StatusResponse()


@router.post("/events")
async def record_events() -> Response:
    """
    Accepts cache usage events from clients. We don't keep these.

    Returns:
        An empty response.

    """
    return Response(status_code=200)


@router.head("/{artifact_id}")
async def head_artifact(key: ArtifactKey, cache: Coordinator) -> Response:
    """
    Checks whether an artifact exists.

    Args:
        key: The storage key of the artifact.
        cache: The cache coordinator.

    Returns:
        An empty response with status 200 if it exists.

    """
    with translate_errors():
        cached = await cache.is_cached(key)
    if not cached:
        raise HTTPException(status_code=404, detail="Artifact not found.")

    return Response(status_code=200)


@router.get("/{artifact_id}")
async def get_artifact(key: ArtifactKey, cache: Coordinator) -> Response:
    """
    Downloads an artifact.

    Args:
        key: The storage key of the artifact.
        cache: The cache coordinator.

    Returns:
        The binary contents of the artifact.

    """
    logger.debug("Getting artifact {}.", key)
    with translate_errors():
        reader = await cache.lookup(key)
        if reader is None:
            raise HTTPException(status_code=404, detail="Artifact not found.")

        # Make sure the backend can actually serve it before we commit to a
        # successful response.
        try:
            await reader.open()
        except BaseException:
            await reader.aclose()
            raise

    return StreamingResponse(
        _stream_artifact(reader), media_type="application/octet-stream"
    )


@router.put("/{artifact_id}", response_model=PutArtifactResponse)
async def put_artifact(
    key: ArtifactKey, cache: Coordinator, request: Request
) -> PutArtifactResponse:
    """
    Uploads an artifact. The request body is streamed into the backend.

    Args:
        key: The storage key of the artifact.
        cache: The cache coordinator.
        request: The request, for reading the body.

    Returns:
        The response, which is only sent once the artifact is stored.

    """
    logger.debug("Uploading artifact {}.", key)
    with translate_errors():
        await cache.upload(key, request.stream())

    return PutArtifactResponse(urls=[key])
