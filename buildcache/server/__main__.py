"""
Runs the cache server.
"""


import uvicorn

from ..config import config


def main() -> None:
    server_config = config["server"]
    uvicorn.run(
        "buildcache.server.main:app",
        host=server_config["host"].as_str(),
        port=server_config["port"].get(int),
        # We configure our own logging.
        log_level="warning",
    )


if __name__ == "__main__":
    main()
