"""
Schemas for the root endpoints.
"""


from typing import Optional

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """
    Response to a health check.

    Attributes:
        healthy: Whether the backend answered.
        backend: The type of backend in use.
        reason: Why the backend is unhealthy, if it is.

    """

    healthy: bool
    backend: str
    reason: Optional[str] = None
