"""
Implementations of artifact storage backends.
"""


from .storage_provider import StorageProvider, check_key
from .streams import ArtifactReader, ArtifactWriter
