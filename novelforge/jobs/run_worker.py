#!/usr/bin/env python3
"""
Standalone pipeline worker process.

Run this as a separate process from the web server (with
EMBEDDED_WORKER=false on the web side) so long generation stages never
hold up request workers.

Usage:
    python -m novelforge.jobs.run_worker
"""

import asyncio
import signal

from novelforge.config import AppConfig, config
from novelforge.container import build_services
from novelforge.utils.logging import configure_logging


async def main(settings: AppConfig = config):
    """Run the pipeline worker as a standalone process."""
    configure_logging(settings.LOG_LEVEL)

    print("=" * 60)
    print("Starting Standalone Pipeline Worker")
    print("=" * 60)
    print(f"  Job database: {settings.job_db_path}")
    print(f"  Poll interval: {settings.WORKER_POLL_INTERVAL_SECONDS}s")
    print(f"  Max attempts: {settings.JOB_MAX_ATTEMPTS}")
    print(f"  Shutdown timeout: {settings.WORKER_SHUTDOWN_TIMEOUT_SECONDS}s")
    print("=" * 60)

    services = await build_services(settings)

    # Handle shutdown signals gracefully
    shutdown_event = asyncio.Event()

    def handle_shutdown(signum, frame):
        print(f"\n  Received signal {signum}, shutting down...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    try:
        await services.worker.start()

        print("\n  Worker running. Press Ctrl+C to stop.\n")

        # Keep running until shutdown signal
        await shutdown_event.wait()
    finally:
        print("\n  Shutting down worker...")
        await services.worker.stop(timeout=settings.WORKER_SHUTDOWN_TIMEOUT_SECONDS)
        await services.close()
        print("  Worker stopped.")


if __name__ == "__main__":
    asyncio.run(main())
