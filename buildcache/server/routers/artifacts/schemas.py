"""
Schemas for the artifact endpoints.
"""


from typing import List

from pydantic import BaseModel


class StatusResponse(BaseModel):
    """
    Response to a status request.

    Attributes:
        status: Whether caching is enabled.

    """

    status: str = "enabled"


class PutArtifactResponse(BaseModel):
    """
    Response to an artifact upload.

    Attributes:
        urls: The storage keys of the uploaded artifacts.

    """

    urls: List[str]
