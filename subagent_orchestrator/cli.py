"""Command-line interface for running the Subagent Orchestrator."""

import argparse
import sys
from typing import List, Optional

import uvicorn

from .utils.config import get_config
from .utils.logging import configure_logging, get_logger


def parse_arguments(argv: Optional[List[str]] = None):
    """Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog="subagent-orchestrator",
        description="Subagent Orchestrator: agent registry, task dispatch and workflows",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve the HTTP API with settings from orchestrator.json / ORCHESTRATOR_* variables
  subagent-orchestrator serve

  # Serve on all interfaces with JSON logs
  subagent-orchestrator serve --host 0.0.0.0 --port 8080 --json-logs
        """
    )
    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", help="Bind address (default from configuration)")
    serve.add_argument("--port", type=int, help="Bind port (default from configuration)")
    serve.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default from configuration)"
    )
    serve.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    serve.add_argument(
        "--tick-interval",
        type=float,
        help="Seconds between background dispatch ticks"
    )

    return parser.parse_args(argv)


def serve(args) -> int:
    """Run the API server until interrupted."""
    from .api.main import create_app

    config = get_config()
    updates = {}
    if args.tick_interval is not None:
        updates["orchestration"] = config.orchestration.model_copy(
            update={"tick_interval_seconds": args.tick_interval}
        )
    if updates:
        config = config.model_copy(update=updates)

    log_level = args.log_level or config.log_level
    configure_logging(level=log_level, json_format=args.json_logs or config.json_logging)
    logger = get_logger(__name__)

    host = args.host or config.api.host
    port = args.port or config.api.port
    logger.info("Starting server", host=host, port=port)

    uvicorn.run(create_app(config=config), host=host, port=port, log_level=log_level.lower())
    return 0


def main(argv: Optional[List[str]] = None):
    args = parse_arguments(argv)
    if args.command == "serve":
        sys.exit(serve(args))

    parse_arguments(["--help"])


if __name__ == "__main__":
    main()
