"""Daemon entry point: wires the store, clients and the three loops together."""

import asyncio
import fcntl
import logging
import os
import signal
from pathlib import Path

import httpx

from . import db
from .config import Config
from .driver import RecurringTaskDriver, seed_config_sources
from .matrix import MatrixClient
from .reminders import ReminderScheduler
from .sources import build_sources
from .sync_poller import SyncPoller

logger = logging.getLogger("roomkeeper.daemon")


class Services:
    """Long-lived service objects, built once at startup."""

    def __init__(self, config: Config, client=None, sources: dict | None = None):
        self.config = config
        self.store = db.JobStore(config.db_path)
        self.client = client or MatrixClient(config)
        self.sources = sources if sources is not None else build_sources()
        self.driver = RecurringTaskDriver(config, self.store, self.client, self.sources)
        self.reminders = ReminderScheduler(
            config, self.store, self.client,
            resolve_name=getattr(self.client, "get_display_name", None),
        )
        self.sync = SyncPoller(
            config, self.store, self.client,
            driver=self.driver, reminders=self.reminders, sources=self.sources,
        )

    def stop(self) -> None:
        self.driver.stop()
        self.reminders.stop()
        self.sync.stop()


async def serve(services: Services, stop_event: asyncio.Event) -> None:
    """Run the driver, reminder and sync loops until stop_event is set."""

    async def _wait_for_stop():
        await stop_event.wait()
        logger.info("Stopping loops")
        services.stop()

    await asyncio.gather(
        services.driver.run(),
        services.reminders.run(),
        services.sync.run(),
        _wait_for_stop(),
    )


async def _main(config: Config) -> int:
    services = Services(config)
    services.store.init()
    count = seed_config_sources(services.store, config)
    logger.info("STARTUP %d subscription(s) from config", count)

    try:
        await services.client.login()
    except httpx.HTTPError as e:
        logger.error("Matrix login failed: %s", e)
        return 1

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, _on_signal, signum, stop_event)

    await serve(services, stop_event)
    logger.info("Daemon stopped")
    return 0


def _on_signal(signum: int, stop_event: asyncio.Event) -> None:
    logger.info("Received signal %d, shutting down gracefully...", signum)
    stop_event.set()


def run_daemon(config: Config) -> int:
    """
    Run the bot as a daemon until SIGTERM/SIGINT.
    Returns a process exit code.
    """
    # Acquire exclusive lock to prevent two daemons on one store
    lock_path = Path(config.scheduler.lock_path)
    lock_file = open(lock_path, "w")
    try:
        fcntl.flock(lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        logger.error("Another roomkeeper daemon is already running. Exiting.")
        lock_file.close()
        return 1

    # Write PID to lock file for debugging
    lock_file.write(str(os.getpid()))
    lock_file.flush()

    logger.info("STARTUP roomkeeper daemon starting (pid: %d)", os.getpid())
    logger.info("STARTUP Homeserver: %s as %s", config.matrix.homeserver, config.matrix.user_id)
    logger.info("STARTUP Store: %s", config.db_path)
    logger.info("STARTUP Intervals: rss %ds, github %ds", config.intervals.rss, config.intervals.github)
    logger.info("STARTUP Max idle: %ds", config.scheduler.max_idle_seconds)
    logger.info("STARTUP Reminder retry delay: %ds", config.scheduler.reminder_retry_seconds)
    logger.info("STARTUP Admins: %d, mods: %d", len(config.access.admins), len(config.access.mods))

    try:
        return asyncio.run(_main(config))
    finally:
        fcntl.flock(lock_file, fcntl.LOCK_UN)
        lock_file.close()
