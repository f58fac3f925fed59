"""Command line entry point for the settlement API server."""
import argparse
import asyncio
import logging

import uvicorn

from config import settings_conf
from database import init_db

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings_conf['log_level']),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def parse_args():
    parser = argparse.ArgumentParser(description="Run the settlement API server")
    parser.add_argument('--host', default=settings_conf['api_host'])
    parser.add_argument('--port', type=int, default=settings_conf['api_port'])
    parser.add_argument(
        '--init-db',
        action='store_true',
        help="Create the database schema and exit"
    )
    parser.add_argument(
        '--force-recreate',
        action='store_true',
        help="With --init-db, drop and recreate every table"
    )
    return parser.parse_args()


async def initialize(force_recreate: bool) -> None:
    logger.info("Initializing database...")
    pool = await init_db(force_recreate=force_recreate)
    await pool.close()
    logger.info("Database ready")


def main():
    args = parse_args()

    if args.init_db:
        asyncio.run(initialize(args.force_recreate))
        return

    logger.info(
        f"Starting API on {args.host}:{args.port} "
        f"with {settings_conf['store_backend']} store"
    )
    uvicorn.run(
        "api:app",
        host=args.host,
        port=args.port,
        log_level=settings_conf['log_level'].lower()
    )


if __name__ == "__main__":
    main()
