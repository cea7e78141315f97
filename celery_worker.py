#!/usr/bin/env python3
"""
Worker for customer notifications and order housekeeping.

    python celery_worker.py

Runs an embedded beat scheduler for the stale-order sweep, so start only
one of these per deployment. Reads the same .env as the API, so both agree
on REDIS_URL and SMTP.
"""
from dotenv import load_dotenv

load_dotenv()

if __name__ == "__main__":
    from core.celery import MAINTENANCE_QUEUE, NOTIFICATION_QUEUE, celery_app
    from core.logging import configure_logging

    configure_logging()

    celery_app.worker_main([
        "worker",
        "--beat",
        "--loglevel=info",
        f"--queues={NOTIFICATION_QUEUE},{MAINTENANCE_QUEUE}",
        "--concurrency=2",
        "--without-gossip",
        "--without-mingle",
    ])
