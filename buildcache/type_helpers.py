"""
Miscellaneous type aliases.
"""


from typing import AsyncIterable, Union

from pydantic import ConfigDict

ArbitraryTypesConfig = ConfigDict(arbitrary_types_allowed=True)
"""
Pydantic configuration that allows for arbitrary types.
"""


ArtifactData = Union[bytes, AsyncIterable[bytes]]
"""
Anything that can be uploaded as the contents of an artifact.
"""
