"""
HTTP server that exposes the cache with the `/v8/artifacts` API.
"""
