"""
Tests for the `options` module.
"""


import pytest
from confuse import ConfigReadError
from pydantic import BaseModel, ConfigDict, Field

from buildcache.backends import options
from buildcache.config_view_mock import ConfigViewMock
from buildcache.errors import ConfigurationError


class _ExampleOptions(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = "default"
    size: int = Field(1, gt=0)


def test_parse_options() -> None:
    """
    Tests that a configuration section is validated into options.
    """
    # Arrange.
    mock_config = ConfigViewMock()
    mock_config.set_values(name="custom", size=5)

    # Act.
    got_options = options.parse_options(mock_config, _ExampleOptions)

    # Assert.
    assert got_options == _ExampleOptions(name="custom", size=5)


def test_parse_options_missing_section() -> None:
    """
    Tests that a missing section gives the default options.
    """
    # Arrange.
    mock_config = ConfigViewMock()
    mock_config.exists.return_value = False

    # Act.
    got_options = options.parse_options(mock_config, _ExampleOptions)

    # Assert.
    assert got_options == _ExampleOptions()
    mock_config.flatten.assert_not_called()


@pytest.mark.parametrize(
    "values",
    [dict(size=0), dict(size="big"), dict(unknown=True)],
    ids=("out_of_range", "wrong_type", "unknown_key"),
)
def test_parse_options_invalid(values: dict) -> None:
    """
    Tests that invalid options are reported as configuration errors.

    Args:
        values: The invalid configuration.

    """
    # Arrange.
    mock_config = ConfigViewMock()
    mock_config.set_values(**values)

    # Act and assert.
    with pytest.raises(ConfigurationError, match="_ExampleOptions"):
        options.parse_options(mock_config, _ExampleOptions)


def test_parse_options_unreadable() -> None:
    """
    Tests that errors reading the configuration are reported as
    configuration errors.
    """
    # Arrange.
    mock_config = ConfigViewMock()
    mock_config.exists.return_value = True
    mock_config.flatten.side_effect = ConfigReadError("config.yaml")

    # Act and assert.
    with pytest.raises(ConfigurationError, match="Could not read"):
        options.parse_options(mock_config, _ExampleOptions)
