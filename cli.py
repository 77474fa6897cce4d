#!/usr/bin/env python3
"""
Command-line interface for the order pipeline.

Usage:
    uv run python cli.py [command] [options]

Commands:
    demo        Run an in-process pipeline over a batch of orders
    config      Print the effective settings
    test        Run the test suite
    serve       Start the API server

Examples:
    uv run python cli.py demo --orders 10 --groups 3
    uv run python cli.py demo --fail-rate 0.3
    uv run python cli.py config
    uv run python cli.py serve
"""

import argparse
import json
import subprocess
import sys


def run_demo(orders: int, groups: int, fail_rate: float, concurrency: int) -> None:
    """Run the pipeline demo."""
    from pipeline.demo import run_pipeline_demo

    if orders < 1 or groups < 1:
        print("--orders and --groups must be at least 1")
        sys.exit(1)
    run_pipeline_demo(
        orders=orders,
        groups=groups,
        fail_rate=fail_rate,
        max_concurrency=concurrency,
    )


def show_config() -> None:
    """Print the settings the pipeline would run with."""
    from pydantic import ValidationError

    from shared.settings import PipelineSettings

    try:
        settings = PipelineSettings()
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}")
        sys.exit(1)
    print(json.dumps(settings.model_dump(), indent=2))


def run_tests(args: list[str]) -> None:
    """Run the test suite."""
    cmd = ["uv", "run", "pytest"] + args
    subprocess.run(cmd)


def run_server(host: str, port: int, reload: bool) -> None:
    """Start the API server."""
    cmd = ["uv", "run", "uvicorn", "api.main:app", f"--host={host}", f"--port={port}"]
    if reload:
        cmd.append("--reload")

    print(f"Starting server at http://{host}:{port}")
    print(f"API docs available at http://{host}:{port}/docs")
    subprocess.run(cmd)


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Order Pipeline CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s demo --orders 10 --groups 3
  %(prog)s demo --fail-rate 0.3 --concurrency 2
  %(prog)s config
  %(prog)s test -v
  %(prog)s serve --reload
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Demo command
    demo_parser = subparsers.add_parser("demo", help="Run the pipeline demo")
    demo_parser.add_argument("--orders", type=int, default=6, help="Number of orders to submit")
    demo_parser.add_argument("--groups", type=int, default=2, help="Number of ordering groups")
    demo_parser.add_argument(
        "--fail-rate",
        type=float,
        default=0.0,
        help="Probability that an execution fails (0-1)",
    )
    demo_parser.add_argument(
        "--concurrency",
        type=int,
        default=1,
        help="Maximum concurrent processor invocations",
    )

    # Config command
    subparsers.add_parser("config", help="Print the effective settings")

    # Test command
    test_parser = subparsers.add_parser("test", help="Run the test suite")
    test_parser.add_argument(
        "pytest_args",
        nargs="*",
        default=[],
        help="Arguments to pass to pytest",
    )

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    args = parser.parse_args()

    if args.command == "demo":
        run_demo(args.orders, args.groups, args.fail_rate, args.concurrency)
    elif args.command == "config":
        show_config()
    elif args.command == "test":
        run_tests(args.pytest_args)
    elif args.command == "serve":
        run_server(args.host, args.port, args.reload)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
