"""
loomcode entry point.

This file handles startup concerns (arg-parsing, env setup, logging) and launches the appropriate
interface (HTTP API or interactive CLI).
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from loomcode.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _init_logging(level: str) -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        stream=sys.stdout,
    )
    # Keep per-request client logs out of the agent's output
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main(argv: list[str] | None = None) -> None:
    """
    Main entry point for the loomcode application.

    This function sets up the command-line interface, initializes logging, and starts the
    application in either API or CLI mode.
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Run the loomcode coding agent")
    parser.add_argument(
        "--mode",
        choices=["api", "cli"],
        type=str.lower,
        default="cli",
        help="Launch the REST API or the interactive CLI (default: cli)",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        type=str.lower,
        default=settings.LOG_LEVEL,
        help="Logging level (default from env: %(default)s)",
    )
    parser.add_argument(
        "--workspace",
        default=settings.WORKSPACE_ROOT,
        help="Workspace root the agent works in (default from env: %(default)s)",
    )
    args = parser.parse_args(argv)

    # Override settings with command-line arguments
    settings.LOG_LEVEL = args.log_level
    settings.WORKSPACE_ROOT = args.workspace

    _init_logging(settings.LOG_LEVEL)

    # Ensure the data directory exists and is writable
    data_dir = Path(settings.DATA_DIR)
    data_dir.mkdir(parents=True, exist_ok=True)
    if not data_dir.is_dir() or not os.access(data_dir, os.W_OK):
        logger.error("Data directory is not writable: %s", data_dir)
        sys.exit(1)

    logger.info("Starting loomcode [%s mode]", args.mode)
    logger.debug("Settings: %s", settings.model_dump(exclude={"OPENAI_API_KEY"}))

    if args.mode == "api":
        # Lazy import to avoid web dependencies if not needed
        from loomcode.api.app import run_api  # pylint: disable=import-outside-toplevel

        run_api(host="127.0.0.1", port=settings.API_PORT, reload=settings.DEBUG)
    else:
        from loomcode.client.cli import run_cli  # pylint: disable=import-outside-toplevel

        run_cli()


if __name__ == "__main__":
    main()
