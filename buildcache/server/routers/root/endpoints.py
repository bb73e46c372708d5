"""
Endpoints that are not specific to artifacts.
"""


from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ....coordinator import CacheCoordinator, Existence
from ...dependencies import coordinator
from .schemas import HealthResponse

router = APIRouter()

HEALTH_PROBE_KEY = "buildcache-health-probe"
"""
Key that we check for in order to test the backend. It doesn't matter
whether it exists. It has a single segment so that every backend accepts it.
"""


@router.get("/health", response_model=HealthResponse)
async def get_health(
    cache: CacheCoordinator = Depends(coordinator),
) -> JSONResponse:
    """
    Checks whether the cache backend is working. A backend that can't be
    reached is reported differently from one that is just empty.

    Args:
        cache: The cache coordinator.

    Returns:
        The health status, with status 503 if the backend is failing.

    """
    result = await cache.check(HEALTH_PROBE_KEY)
    healthy = result.status != Existence.ERROR
    response = HealthResponse(
        healthy=healthy,
        backend=type(cache.provider).__name__,
        reason=result.reason,
    )

    return JSONResponse(
        status_code=200 if healthy else 503, content=response.model_dump()
    )
