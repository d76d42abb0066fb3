#!/usr/bin/env python3
"""
Celery worker script for the order lifecycle service.
Runs the delivery tasks and, with --beat, the unassigned delivery sweep.
"""

import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

if __name__ == "__main__":
    from core.celery import celery_app
    from core.logging import configure_logging

    configure_logging()

    # Start Celery worker with an embedded beat scheduler
    celery_app.start([
        "worker",
        "--beat",
        f"--loglevel={os.getenv('LOG_LEVEL', 'info').lower()}",
        "--concurrency=4",
        "--without-gossip",
        "--without-mingle",
        "--without-heartbeat",
    ])
