"""
Loads the storage backend named in the configuration.

The backend is configured with a `type`, which is either one of the
built-in aliases or the full import path of a `StorageProvider` subclass,
and a `config` section that is passed to its `from_config()`:

```
storage:
  type: s3
  config:
    bucket: build-artifacts
```
"""


import importlib
import re
from contextlib import asynccontextmanager
from functools import cache
from typing import AsyncIterator, Type, TypeVar

from confuse import ConfigError, ConfigView
from loguru import logger

from ..errors import ConfigurationError
from .injectable import Injectable
from .storage_provider import StorageProvider

_IMPORT_RE = re.compile(r"(?P<module>.+)\.(?P<class>\w+)")
"""
Regular expression to use for distinguishing the module and class parts
of an import statement.
"""

BUILTIN_BACKENDS = {
    "filesystem": (
        f"{__package__}.filesystem_storage.FilesystemStorageProvider"
    ),
    "http": f"{__package__}.http_storage.HttpStorageProvider",
    "memory": f"{__package__}.memory_storage.MemoryStorageProvider",
    "s3": f"{__package__}.s3_storage.S3StorageProvider",
}
"""
Short names for the backends that ship with the cache.
"""


DepType = TypeVar("DepType", bound=Injectable)


@cache
def _import_class(class_path: str) -> Type:
    """
    Dynamically imports class.

    Args:
        class_path: The full, dotted import path for the class, such as
            would be used in an `import` statement.

    Raises:
        `ConfigurationError` if `class_path` is invalid.

    Returns:
        The class that it loaded.

    """
    # Split the class and module portions.
    match = _IMPORT_RE.fullmatch(class_path)
    if match is None:
        raise ConfigurationError(
            f"Class specification '{class_path}' in config is not valid."
        )
    class_name = match.group("class")
    module_path = match.group("module")

    logger.debug("Got module {} and class {}.", module_path, class_name)

    try:
        module = importlib.import_module(module_path)
    except ImportError as error:
        raise ConfigurationError(
            f"Could not import module {module_path}: {error}"
        ) from error
    if not hasattr(module, class_name):
        raise ConfigurationError(
            f"Class {class_name} does not exist in module {module_path}."
        )
    return getattr(module, class_name)


@asynccontextmanager
async def _load_dependency(
    view: ConfigView, *, check_type: Type[DepType]
) -> AsyncIterator[DepType]:
    """
    Loads a dependency based on the specification in a `ConfigView`.

    Args:
        view: The view containing the dependency specification.
        check_type: A superclass that the loaded dependency should
            conform to.

    Raises:
        `ConfigurationError` if the dependency is not specified correctly,
        or is of the wrong type.

    Yields:
        The instance of the dependency that it loaded.

    """
    try:
        type_name = view["type"].as_str()
    except ConfigError as error:
        raise ConfigurationError(
            f"No valid backend type configured: {error}"
        ) from error

    logger.info("Loading dependency '{}'...", type_name)
    type_class = _import_class(BUILTIN_BACKENDS.get(type_name, type_name))

    # Ensure that the type is correct.
    if not isinstance(type_class, type) or not issubclass(
        type_class, check_type
    ):
        raise ConfigurationError(
            f"Expected a subclass of {check_type.__name__}, but got "
            f"{type_class!r} instead."
        )

    # Initialize the new instance.
    async with type_class.from_config(view["config"]) as dependency:
        yield dependency


@asynccontextmanager
async def storage_provider(view: ConfigView) -> AsyncIterator[StorageProvider]:
    """
    Creates the storage backend. It lives, along with any connections it
    holds, until the context manager exits.

    Args:
        view: The `storage` configuration section.

    Yields:
        The `StorageProvider` subclass to use.

    """
    async with _load_dependency(view, check_type=StorageProvider) as provider:
        yield provider
