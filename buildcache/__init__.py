"""
Remote build-artifact cache with pluggable storage backends.
"""
