"""
API routers for the server.
"""
