"""Expiry loop: periodically zero lapsed token pools.

- Scan: remaining > 0 AND expires_at <= NOW() AND source_type != 'purchase'
- Expire: one transaction per pool (pool zeroed + ``expire`` ledger entry)
- Interval: EXPIRY_INTERVAL_SEC (default 3600 seconds)
"""

import logging
import signal
import threading
import time
from typing import Callable

from sqlalchemy.orm import Session

from tokenwise_api.config.env import get_int_env
from tokenwise_api.ledger.expiry import process_expired_pools

logger = logging.getLogger(__name__)

# Global shutdown event for graceful termination
_shutdown_event = threading.Event()


def _signal_handler(signum, frame):
    """Handle shutdown signals (SIGTERM, SIGINT) gracefully."""
    sig_name = signal.Signals(signum).name
    logger.info("sweeper.shutdown_requested", extra={"signal": sig_name})
    _shutdown_event.set()


def install_signal_handlers() -> None:
    """Register SIGTERM/SIGINT handlers (main thread only)."""
    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)


def get_expiry_interval_seconds() -> int:
    """Sleep between sweeps (EXPIRY_INTERVAL_SEC, default 3600)."""
    return get_int_env("EXPIRY_INTERVAL_SEC", 3600, minimum=1)


def get_expiry_scan_limit() -> int:
    """Pools handled per sweep (EXPIRY_SCAN_LIMIT, default 100)."""
    return get_int_env("EXPIRY_SCAN_LIMIT", 100, minimum=1)


def run_expiry_sweep(session_factory: Callable[[], Session], limit: int) -> tuple[int, int, int]:
    """Run one sweep with a fresh session.

    Returns:
        (pools processed, tokens expired, per-pool errors)
    """
    session = session_factory()
    try:
        result = process_expired_pools(session, limit=limit)
    finally:
        session.close()
    return result.processed, result.expired_tokens, len(result.errors)


def expiry_loop(
    session_factory: Callable[[], Session],
    interval_seconds: int = 3600,
    limit_per_scan: int = 100,
    stop_after_one_iteration: bool = False,
) -> None:
    """Main sweeper loop.

    A failing iteration is logged and retried on the next tick; per-pool
    failures are already isolated inside the sweep.

    Args:
        session_factory: Creates a Session per iteration
        interval_seconds: Sleep interval between sweeps
        limit_per_scan: Max pools to expire per sweep
        stop_after_one_iteration: For testing only - exit after one sweep
    """
    logger.info(
        "sweeper.loop.started",
        extra={"interval_seconds": interval_seconds, "limit_per_scan": limit_per_scan},
    )

    iteration = 0
    total_processed = 0
    total_expired = 0

    while not _shutdown_event.is_set():
        iteration += 1
        iteration_start = time.time()

        try:
            processed, expired, errors = run_expiry_sweep(session_factory, limit_per_scan)
            total_processed += processed
            total_expired += expired

            if processed or errors:
                logger.info(
                    "sweeper.iteration.completed",
                    extra={
                        "iteration": iteration,
                        "processed": processed,
                        "expired_tokens": expired,
                        "error_count": errors,
                        "duration_ms": int((time.time() - iteration_start) * 1000),
                    },
                )
        except Exception as e:
            logger.error(
                "sweeper.iteration.failed",
                extra={"iteration": iteration, "error_type": type(e).__name__},
                exc_info=True,
            )

        if stop_after_one_iteration:
            break

        # Interruptible sleep - allows immediate shutdown on signal
        _shutdown_event.wait(interval_seconds)

    logger.info(
        "sweeper.loop.stopped",
        extra={
            "total_iterations": iteration,
            "total_processed": total_processed,
            "total_expired_tokens": total_expired,
        },
    )
