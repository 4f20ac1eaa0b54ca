#!/usr/bin/env python
"""
Taolu Tracker API Server Runner.

Usage:
    python run_api.py
    taolu-api

Host, port, log level and reload come from the environment
(TAOLU_API_HOST, TAOLU_API_PORT or PORT, TAOLU_LOG_LEVEL,
ENVIRONMENT=development), optionally through a .env file.
"""

import logging
import sys
from typing import Any, Dict

import uvicorn
from dotenv import load_dotenv

from taolu_tracker.config import ServerConfig, get_config

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(server: ServerConfig) -> None:
    """Route application and uvicorn logs through one formatter."""
    logging.basicConfig(
        level=server.log_level.upper(),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def uvicorn_options(server: ServerConfig) -> Dict[str, Any]:
    return {
        "host": server.host,
        "port": server.port,
        "reload": server.reload,
        "log_level": server.log_level,
        "access_log": True,
    }


def main() -> None:
    """Run the tracker API server."""
    load_dotenv()
    server = get_config().server
    configure_logging(server)

    mode = "development (reload)" if server.reload else "production"
    logger.info(f"Starting Taolu Tracker API on {server.host}:{server.port} [{mode}]")

    try:
        uvicorn.run("api.main:app", **uvicorn_options(server))
    except (OSError, RuntimeError) as e:
        logger.error(f"Failed to start API: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
