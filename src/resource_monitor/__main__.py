"""
Command-line entry point: python -m resource_monitor / resource-monitor.
"""

from __future__ import annotations

import asyncio
import sys

import yaml

from resource_monitor.config import load_config
from resource_monitor.errors import MonitorError
from resource_monitor.logging import get_logger, setup_logging
from resource_monitor.server import run_service

logger = get_logger(__name__)


def main(argv: list[str] | None = None) -> int:
    """
    Load configuration, configure logging and run the service.

    Args:
        argv: Command-line arguments (defaults to sys.argv).

    Returns:
        Process exit code.
    """
    try:
        config = load_config(cli_args=argv)
    except (FileNotFoundError, yaml.YAMLError, ValueError) as e:
        # pydantic.ValidationError is a ValueError
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    setup_logging(config.logging)

    try:
        asyncio.run(run_service(config))
    except MonitorError:
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
