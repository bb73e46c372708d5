"""
Global configuration for the cache.
"""


import confuse

config = confuse.Configuration("buildcache", __name__)
"""
The application configuration. Defaults are read from `config_default.yaml`
in this package and can be overridden by the user configuration file.
"""
