#!/usr/bin/env python3
"""
Minibank Entry Point

Initializes the account table and starts the FastAPI server.
Use --seed to create a demo account before serving.
"""

import argparse
import sys

import uvicorn

from minibank.api import app
from minibank.api.auth import set_banking_system
from minibank.config import get_config
from minibank.errors import BankError
from minibank.logging_config import setup_logging
from minibank.system import BankingSystem


def seed_accounts(system: BankingSystem) -> None:
    """Create a demo account and print its number"""
    view = system.create_account("abhi", "anand", "siuu")
    print(f"seeded account => {view.number}")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Minibank JSON API server")
    parser.add_argument("--seed", action="store_true", help="seed the database with dummy data")
    parser.add_argument("--host", default=None, help="bind address (default from config)")
    parser.add_argument("--port", type=int, default=None, help="bind port (default from config)")
    args = parser.parse_args(argv)

    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    if not config.jwt_secret:
        logger.error("MINIBANK_JWT_SECRET environment variable must be set")
        return 1

    try:
        system = BankingSystem.from_config(config)
    except BankError as e:
        logger.error(f"Startup failed: {e}")
        return 1

    if args.seed:
        logger.info("seeding database")
        seed_accounts(system)

    set_banking_system(system)

    host = args.host or config.api_host
    port = args.port or config.api_port
    logger.info(f"JSON API server running on {host}:{port}")

    try:
        uvicorn.run(app, host=host, port=port, log_level=config.log_level.lower())
    finally:
        system.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
