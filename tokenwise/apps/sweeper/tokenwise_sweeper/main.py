"""Tokenwise Sweeper main entry point.

Runs the expiry loop: lapsed subscription, daily, rollover and admin pools
are zeroed and an ``expire`` ledger entry is written for each one. Balance
reads already ignore lapsed pools; the sweep keeps the ledger sum in line
with the pool table.
"""

import logging
import os
from pathlib import Path

from tokenwise_api.config.env import get_database_url
from tokenwise_api.db.engine import build_engine, build_sessionmaker
from tokenwise_api.utils import configure_json_logging
from tokenwise_sweeper.loops.expiry_loop import (
    expiry_loop,
    get_expiry_interval_seconds,
    get_expiry_scan_limit,
    install_signal_handlers,
)

logger = logging.getLogger(__name__)

READY_FILE_PATH = "/tmp/sweeper-ready"


def main() -> None:
    """Main entry point for the sweeper."""
    configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))
    Path(READY_FILE_PATH).unlink(missing_ok=True)

    # Fail-fast in production when DATABASE_URL is missing
    database_url = get_database_url()
    interval_seconds = get_expiry_interval_seconds()
    scan_limit = get_expiry_scan_limit()

    engine = build_engine(database_url)
    SessionLocal = build_sessionmaker(engine)

    install_signal_handlers()
    logger.info(
        "sweeper.starting",
        extra={"interval_seconds": interval_seconds, "scan_limit": scan_limit},
    )

    try:
        # Readiness file checked by the container orchestrator
        Path(READY_FILE_PATH).write_text("ready\n")
        expiry_loop(
            session_factory=SessionLocal,
            interval_seconds=interval_seconds,
            limit_per_scan=scan_limit,
        )
    finally:
        Path(READY_FILE_PATH).unlink(missing_ok=True)
        engine.dispose()
        logger.info("sweeper.shutdown_complete")


if __name__ == "__main__":
    main()
