"""
Bearer token authentication for the server.
"""


import secrets
from typing import Iterable, Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger

_bearer_scheme = HTTPBearer(auto_error=False)


class TokenChecker:
    """
    Dependency that only lets requests through if they carry one of the
    configured tokens.
    """

    def __init__(self, tokens: Iterable[str]):
        """
        Args:
            tokens: The tokens that are accepted.

        """
        self.__tokens = [t for t in tokens if t]
        if not self.__tokens:
            logger.warning("Authentication is enabled, but no tokens are set.")

    def __is_valid(self, token: str) -> bool:
        return any(
            secrets.compare_digest(token.encode(), known.encode())
            for known in self.__tokens
        )

    async def __call__(
        self,
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(
            _bearer_scheme
        ),
    ) -> None:
        if credentials is None or not self.__is_valid(
            credentials.credentials
        ):
            raise HTTPException(
                status_code=401,
                detail="Missing or invalid token.",
                headers={"WWW-Authenticate": "Bearer"},
            )
