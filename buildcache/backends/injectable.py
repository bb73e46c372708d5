"""
Superclass for dependencies that are created from the configuration.
"""


import abc
from contextlib import asynccontextmanager
from typing import AsyncIterator, TypeVar

from confuse import ConfigView


class Injectable(abc.ABC):
    """
    Superclass for dependencies that are created from the configuration.
    The lifetime of an instance is the lifetime of the context manager
    returned by `from_config()`, so that any clients or connection pools it
    holds are created once and closed explicitly.
    """

    ClassType = TypeVar("ClassType")

    @classmethod
    @abc.abstractmethod
    @asynccontextmanager
    async def from_config(
        cls: ClassType, config: ConfigView
    ) -> AsyncIterator[ClassType]:
        """
        Context manager that creates a new instance based on the provided
        configuration. Connections, etc. should be closed on exit.

        Args:
            config: The configuration to use to initialize the class.

        Raises:
            `ConfigurationError` if the configuration is invalid. This must
            happen before any connection is attempted.

        Yields:
            The new instance that it created.

        """
        yield  # pragma: no cover
