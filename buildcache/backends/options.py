"""
Converts configuration sections into validated option models.
"""


from typing import Type, TypeVar

from confuse import ConfigError, ConfigView
from loguru import logger
from pydantic import BaseModel, ValidationError

from ..errors import ConfigurationError

OptionsType = TypeVar("OptionsType", bound=BaseModel)


def parse_options(
    view: ConfigView, options_class: Type[OptionsType]
) -> OptionsType:
    """
    Reads a configuration section into an options model. A missing section
    is treated the same as an empty one.

    Args:
        view: The configuration section.
        options_class: The model to validate the section against.

    Raises:
        `ConfigurationError` if the section does not validate.

    Returns:
        The validated options.

    """
    try:
        raw_options = view.flatten() if view.exists() else {}
    except ConfigError as error:
        raise ConfigurationError(
            f"Could not read configuration for {options_class.__name__}: "
            f"{error}"
        ) from error

    try:
        options = options_class.model_validate(raw_options)
    except ValidationError as error:
        raise ConfigurationError(
            f"Invalid configuration for {options_class.__name__}: {error}"
        ) from error

    logger.debug("Loaded {}.", options_class.__name__)
    return options
