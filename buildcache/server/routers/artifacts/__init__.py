"""
Endpoints for storing and retrieving artifacts.
"""


from . import endpoints
from .endpoints import router
