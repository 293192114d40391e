#!/usr/bin/env python3
"""
Entrypoint for the renewal worker service.

Runs the ARQ worker that executes the daily subscription renewal sweep.
"""

import logging
import sys

from arq.worker import run_worker

from reconciler.workers.renewal_tasks import WorkerSettings


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main():
    """Main entry point for worker service."""
    logger.info("Starting renewal worker...")
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
