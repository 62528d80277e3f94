#!/usr/bin/env python3
"""
Score tracker server and schema management.

Activity leaders log in with the shared admin password (or a QR code) to
record team scores; everyone else can view the standings.
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

from scoretracker import ScoreTrackerSystem, TrackerConfig
from scoretracker.errors import StorageUnavailable


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Score tracker web server and database management",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "command",
        nargs="?",
        default="serve",
        choices=["serve", "init", "verify", "drop"],
        help="serve: run the web server, init: create tables and seed data, "
        "verify: check tables and print row counts, drop: remove all tables",
    )
    parser.add_argument(
        "--web-port",
        type=int,
        default=int(os.getenv("WEB_PORT", "8081")),
        help="Web interface port (env: WEB_PORT)",
    )
    parser.add_argument(
        "--db",
        default=os.getenv("DB_PATH"),
        help="SQLite database file path (env: DB_PATH, default from config)",
    )
    parser.add_argument(
        "--config",
        default=os.getenv("CONFIG_PATH", "tracker_config.json"),
        help="Configuration file path (env: CONFIG_PATH)",
    )
    parser.add_argument(
        "--host",
        default=os.getenv("HOST", "0.0.0.0"),
        help="Host to bind the server to (env: HOST)",
    )
    return parser


async def run_command(system: ScoreTrackerSystem, command: str) -> int:
    """
    Execute one CLI command.

    @return: Process exit code
    """
    try:
        if command == "init":
            await system.init_db(seed=True)
            print("Database schema initialized successfully!")
            await system.print_summary()

        elif command == "verify":
            await system.print_summary()

        elif command == "drop":
            await system.db.drop_schema()
            print("Database schema dropped successfully!")

        else:
            await system.init_db()
            await system.print_summary()
            await system.run()

    except StorageUnavailable as e:
        print(f"Error: {e.message}")
        return 1

    return 0


def main() -> int:
    """Main function with command line interface."""
    args = build_parser().parse_args()

    config_path = Path(args.config)

    if config_path.exists() and not config_path.is_file():
        print(f"Error: {args.config} exists but is not a file")
        return 1

    system = ScoreTrackerSystem(
        host=args.host,
        web_port=args.web_port,
        db_path=args.db,
        config=TrackerConfig(args.config),
    )

    try:
        return asyncio.run(run_command(system, args.command))
    except KeyboardInterrupt:
        print("\nServer interrupted")
        return 0


if __name__ == "__main__":
    sys.exit(main())
