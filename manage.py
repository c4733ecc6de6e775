#!/usr/bin/env python3
"""
mailsync

Pulls mail from Gmail, Outlook and IMAP accounts into one threaded store and runs the
background job queues (send, sync, bulk mutate, notify, cleanup).

Usage:
    python manage.py [--mode MODE] [--account-id ID] [--owner-id ID] [--full-sync]

Modes:
    - run: Start the sync scheduler and queue workers (default)
    - sync-once: Run a single sync pass over every due account and exit
    - sync-account: Sync one account now (--account-id, --owner-id)
    - list: List accounts with their sync state
    - stats: Show queue and circuit breaker stats
    - test-connection: Check an account's provider credentials (--account-id)
"""

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import asdict

import sentry_sdk
from dotenv import load_dotenv

load_dotenv(override=True)
from app.container import ApplicationContainer  # noqa: E402
from app.db import fastapi_sqlalchemy_context  # noqa: E402
from logging_config import setup_logging  # noqa: E402
from settings import settings  # noqa: E402
from workers.sync_worker import SyncWorker  # noqa: E402

if settings.sentry.is_enabled:
    sentry_sdk.init(
        dsn=settings.sentry.dsn,
        environment=settings.environment.value,
        traces_sample_rate=settings.sentry.traces_sample_rate,
    )

setup_logging()

logger = logging.getLogger(__name__)

container = ApplicationContainer()


def build_worker() -> SyncWorker:
    return SyncWorker(
        scheduler=container.controllers.scheduler(),
        job_queue=container.controllers.job_queue(),
        job_handlers=container.controllers.job_handlers(),
        breakers=container.resilience.breakers(),
        adapters=container.controllers.adapters(),
        notifier=container.controllers.notifier(),
        counter_store=container.resilience.counter_store(),
        cleanup_interval_seconds=settings.queue.cleanup_interval_seconds,
    )


async def run_worker_mode() -> None:
    """Run the scheduler and queue workers until SIGINT/SIGTERM."""
    async with fastapi_sqlalchemy_context():
        worker = build_worker()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(worker.shutdown()))

        await worker.run()


async def sync_once() -> None:
    async with fastapi_sqlalchemy_context():
        scheduler = container.controllers.scheduler()
        try:
            summary = await scheduler.sync_all()
        finally:
            await container.controllers.coordinator().drain_notifications()
            await container.controllers.adapters().close()
        logger.info(f"Sync pass finished: {asdict(summary)}")


async def sync_account(account_id: int, owner_id: int, full_sync: bool) -> None:
    async with fastapi_sqlalchemy_context():
        scheduler = container.controllers.scheduler()
        try:
            outcome = await scheduler.sync_account_on_demand(account_id, owner_id, full_sync=full_sync)
        finally:
            await container.controllers.coordinator().drain_notifications()
            await container.controllers.adapters().close()

        if outcome.success:
            logger.info(f"Account {account_id} synced, {outcome.message_count} new messages")
        else:
            logger.error(f"Account {account_id} sync failed: {outcome.error}")


async def list_accounts() -> None:
    """List all accounts that are eligible for scheduled sync."""
    async with fastapi_sqlalchemy_context():
        accounts = await container.repos.account().get_sync_candidates()

        if not accounts:
            logger.info("No accounts found in database.")
            return

        logger.info(f"Found {len(accounts)} accounts:")
        logger.info("-" * 100)
        for i, account in enumerate(accounts, 1):
            last_sync = account.last_sync_at.isoformat() if account.last_sync_at else "never"
            logger.info(
                f"{i:3d}. {account.email:35} {account.provider.value:8} owner={account.owner_id:<6} "
                f"every {account.sync_frequency_seconds}s, last sync {last_sync}"
            )
        logger.info("-" * 100)


async def show_stats() -> None:
    job_queue = container.controllers.job_queue()
    breakers = container.resilience.breakers()

    for provider in ("gmail", "outlook", "imap"):
        await breakers.restore(f"provider:{provider}")

    for queue, stats in (await job_queue.get_all_stats()).items():
        logger.info(f"Queue {queue}: {asdict(stats)}")
    for name, stats in breakers.get_all_stats().items():
        logger.info(f"Circuit {name}: {stats}")

    await container.resilience.counter_store().close()


async def test_connection(account_id: int) -> None:
    async with fastapi_sqlalchemy_context():
        account = await container.repos.store().get_account(account_id)
        if account is None:
            logger.error(f"Account {account_id} not found")
            return

        adapters = container.controllers.adapters()
        try:
            result = await adapters.get(account.provider).test_connection(account)
        finally:
            await adapters.close()

        if result.success:
            logger.info(f"Connection OK for {account.email}")
        else:
            logger.error(f"Connection failed for {account.email}: {result.error}")


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="mailsync sync engine")
    parser.add_argument(
        "--mode",
        choices=["run", "sync-once", "sync-account", "list", "stats", "test-connection"],
        default="run",
        help="Operating mode",
    )
    parser.add_argument("--account-id", type=int, help="Account to sync or test")
    parser.add_argument("--owner-id", type=int, help="Owner of the account to sync")
    parser.add_argument("--full-sync", action="store_true", help="Ignore the incremental cursor")

    args = parser.parse_args()

    if args.mode in ("sync-account", "test-connection") and args.account_id is None:
        parser.error(f"--account-id is required for {args.mode}")
    if args.mode == "sync-account" and args.owner_id is None:
        parser.error("--owner-id is required for sync-account")

    try:
        if args.mode == "run":
            asyncio.run(run_worker_mode())
        elif args.mode == "sync-once":
            asyncio.run(sync_once())
        elif args.mode == "sync-account":
            asyncio.run(sync_account(args.account_id, args.owner_id, args.full_sync))
        elif args.mode == "list":
            asyncio.run(list_accounts())
        elif args.mode == "stats":
            asyncio.run(show_stats())
        elif args.mode == "test-connection":
            asyncio.run(test_connection(args.account_id))

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception:
        logger.exception("Application failed")
        sys.exit(1)


if __name__ == "__main__":
    main()
