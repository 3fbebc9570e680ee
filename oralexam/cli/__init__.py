#!/usr/bin/env python3
"""
Oral Exam Operations CLI

Usage:
    python -m oralexam.cli <command> [options]

Commands:
    db          Database operations (init)
    seminars    Seminar maintenance (sweep)
    semaphore   Live gate occupancy (status)
    grading     AI grading (retry)

Environment:
    DATABASE_URL    Database connection string
    REDIS_URL       Redis connection string
"""
import sys
import argparse
import logging
from typing import Optional

from oralexam import __version__
from oralexam.cli.commands import DbCommand, GradingCommand, SemaphoreCommand, SeminarsCommand


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="oralexam",
        description="Oral exam operations CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s db init
  %(prog)s seminars sweep
  %(prog)s semaphore status --slot 12
  %(prog)s grading retry --seminar 42
        """
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Database commands
    db_parser = subparsers.add_parser("db", help="Database operations")
    db_subparsers = db_parser.add_subparsers(dest="db_action")
    db_subparsers.add_parser("init", help="Create missing tables")

    # Seminar commands
    seminars_parser = subparsers.add_parser("seminars", help="Seminar maintenance")
    seminars_subparsers = seminars_parser.add_subparsers(dest="seminars_action")
    seminars_subparsers.add_parser("sweep", help="Mark expired bookings as no_show")

    # Semaphore commands
    semaphore_parser = subparsers.add_parser("semaphore", help="Live gate occupancy")
    semaphore_subparsers = semaphore_parser.add_subparsers(dest="semaphore_action")
    status_parser = semaphore_subparsers.add_parser("status", help="Show live leases")
    target = status_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--slot", type=int, help="Seminar slot id (exam gate)")
    target.add_argument("--assignment", type=int, help="Assignment id (review gate)")

    # Grading commands
    grading_parser = subparsers.add_parser("grading", help="AI grading")
    grading_subparsers = grading_parser.add_subparsers(dest="grading_action")
    retry_parser = grading_subparsers.add_parser("retry", help="Re-run grading for a seminar")
    retry_parser.add_argument("--seminar", type=int, required=True, help="Seminar id")

    return parser


def main(args: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if not parsed.command:
        parser.print_help()
        return 1

    setup_logging(parsed.log_level)

    command_map = {
        "db": DbCommand,
        "seminars": SeminarsCommand,
        "semaphore": SemaphoreCommand,
        "grading": GradingCommand,
    }

    if parsed.command in command_map:
        handler = command_map[parsed.command]()
        return handler.execute(parsed)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
