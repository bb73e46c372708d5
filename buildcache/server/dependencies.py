"""
Dependencies that are common to multiple routers.
"""


from contextlib import contextmanager
from typing import Annotated, Iterator, Optional

from fastapi import HTTPException, Path, Query, Request
from loguru import logger

from ..coordinator import CacheCoordinator
from ..errors import (
    ArtifactNotFoundError,
    BackendError,
    InvalidKeyError,
    TransientError,
    UploadInProgressError,
)

NAME_PATTERN = r"^[A-Za-z0-9._-]+$"
"""
What artifact hashes and team names are allowed to look like.
"""


def coordinator(request: Request) -> CacheCoordinator:
    """
    Args:
        request: The current request.

    Returns:
        The coordinator, which is shared by all requests.

    """
    return request.app.state.coordinator


def artifact_key(
    artifact_id: Annotated[str, Path(pattern=NAME_PATTERN)],
    team_id: Annotated[
        Optional[str], Query(alias="teamId", pattern=NAME_PATTERN)
    ] = None,
    slug: Annotated[Optional[str], Query(pattern=NAME_PATTERN)] = None,
) -> str:
    """
    Determines the storage key for an artifact. Artifacts are namespaced by
    team, which can be given either as an ID or as a slug.

    Args:
        artifact_id: The artifact hash.
        team_id: The team ID.
        slug: The team slug.

    Returns:
        The storage key.

    """
    team = team_id or slug
    if team is None:
        raise HTTPException(
            status_code=400, detail="Either teamId or slug must be provided."
        )
    return f"{team}/{artifact_id}"


@contextmanager
def translate_errors() -> Iterator[None]:
    """
    Context manager that turns cache errors into the appropriate HTTP
    errors.

    """
    try:
        yield
    except ArtifactNotFoundError:
        raise HTTPException(status_code=404, detail="Artifact not found.")
    except UploadInProgressError as error:
        raise HTTPException(status_code=409, detail=str(error))
    except InvalidKeyError as error:
        raise HTTPException(status_code=400, detail=str(error))
    except TransientError as error:
        logger.warning("Cache backend is unavailable: {}", error)
        raise HTTPException(
            status_code=503, detail="Cache backend is unavailable."
        )
    except BackendError as error:
        logger.error("Cache backend failed: {}", error)
        raise HTTPException(status_code=502, detail="Cache backend failed.")
