"""
Main entry point for the cache server.
"""


from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Depends, FastAPI
from loguru import logger

from ..config import config
from ..coordinator import open_cache
from ..logger import config_logger
from .authentication import TokenChecker
from .routers import artifacts, root

config_logger("server")


@asynccontextmanager
async def lifespan(app_: FastAPI) -> AsyncIterator[None]:
    """
    Creates the cache when the server starts, and closes the backend
    connections when it stops.

    Args:
        app_: The application.

    """
    async with open_cache(config) as coordinator:
        app_.state.coordinator = coordinator
        yield

    logger.info("Cache backend closed.")


dependencies = []
if not config["security"]["enable_auth"].get(bool):
    logger.warning("Authentication has been disabled through the config file.")
else:
    dependencies.append(
        Depends(TokenChecker(config["security"]["tokens"].as_str_seq()))
    )
app = FastAPI(lifespan=lifespan, dependencies=dependencies)

app.include_router(artifacts.router)
app.include_router(root.router)
