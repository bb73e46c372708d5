"""
Implements utilities for mocking Confuse `ConfigView`s.
"""


import unittest.mock as mock
from typing import Any, Dict

from confuse import ConfigView


class ConfigViewMock(mock.NonCallableMock):
    """
    Special mock for `ConfigView` instances that lets us set fake
    configuration.

    Examples:
        ```
        mock = ConfigViewMock()
        mock["cache"]["on_conflict"].as_choice.return_value = "queue"
        mock["storage"]["config"].set_values(bucket="artifacts")

        print(mock["cache"]["on_conflict"].as_choice(["reject", "queue"]))
        print(mock["storage"]["config"].flatten())
        ```
    """

    def __init__(self, *args: Any, **kwargs: Any):
        """
        Args:
            *args: Will be forwarded to the superclass.
            **kwargs: Will be forwarded to the superclass.
        """
        super().__init__(spec=ConfigView, instance=True, *args, **kwargs)
        # Save arguments so that we can forward them to sub-views.
        self.__args = args
        self.__kwargs = kwargs

        # Sub-views that we have handed out, by key.
        self.__sub_views = {}

    def __getitem__(self, config_key: str) -> "ConfigViewMock":
        """
        Gets a mocked sub-view for a particular configuration key. The
        particular view will be unique for each key.

        Args:
            config_key: The configuration key.

        Returns:
            The corresponding view for this key.

        """
        sub_view = self.__sub_views.get(config_key)
        if sub_view is None:
            sub_view = ConfigViewMock(*self.__args, **self.__kwargs)
            self.__sub_views[config_key] = sub_view

        return sub_view

    def set_values(self, **values: Any) -> None:
        """
        Makes this view look like a section containing the given values.
        `exists()` will return true, `flatten()` and `get()` will return the
        values, and each value will be available from the corresponding
        sub-view.

        Args:
            **values: The values in this section.

        """
        as_dict: Dict[str, Any] = dict(values)
        self.exists.return_value = True
        self.flatten.return_value = as_dict
        self.get.return_value = as_dict

        for key, value in values.items():
            sub_view = self[key]
            sub_view.exists.return_value = True
            sub_view.get.return_value = value
