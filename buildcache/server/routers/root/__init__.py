"""
Endpoints that are not specific to artifacts.
"""


from . import endpoints
from .endpoints import router
