"""Recurring task driver — fires each subscription's poll when it is due."""

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from croniter import croniter

from . import db
from .config import Config
from .db import RecurringTaskState, StorageError, Subscription, utcnow
from .poller import PollOutcome, PollStatus, poll_source
from .sources import RateLimited, TransientFetchError

logger = logging.getLogger("roomkeeper.driver")


class TaskPhase(enum.Enum):
    IDLE = "idle"
    DUE = "due"
    POLLING = "polling"
    SKIPPED = "skipped"


@dataclass
class Schedule:
    """When a recurring task fires: every N seconds, or on a cron expression."""
    interval_seconds: int
    cron: str = ""

    def next_after(self, now: datetime) -> datetime:
        if self.cron:
            return croniter(self.cron, now).get_next(datetime)
        return now + timedelta(seconds=self.interval_seconds)

    def describe(self) -> str:
        if self.cron:
            return f"cron '{self.cron}'"
        return f"every {self.interval_seconds}s"


def seed_config_sources(store: db.JobStore, config: Config) -> int:
    """Upsert subscriptions declared in the config file.

    Config-declared subscriptions that are no longer in the file are removed.
    Subscriptions created by chat commands are left alone. Returns the number
    of config subscriptions now present.
    """
    wanted = {}
    for source in config.sources:
        if not source.target:
            logger.warning("Skipping %s source for %s without a target", source.kind, source.room)
            continue
        subscription = Subscription(
            kind=source.kind,
            source_id=db.make_source_id(source.room, source.target),
            room=source.room,
            target=source.target,
            token=source.token,
            name=source.name,
            interval_seconds=source.interval_seconds,
            cron=source.cron,
            digest=source.digest,
            from_config=True,
        )
        wanted[(subscription.kind, subscription.source_id)] = subscription

    def _seed(txn: db.Transaction) -> None:
        for existing in db.list_subscriptions(txn):
            key = (existing.kind, existing.source_id)
            if existing.from_config and key not in wanted:
                logger.info("Removing %s subscription %s (gone from config)", existing.kind, existing.label)
                db.remove_subscription(txn, existing.kind, existing.source_id)
        for subscription in wanted.values():
            db.put_subscription(txn, subscription)

    store.transaction(_seed)
    return len(wanted)


class RecurringTaskDriver:
    """Owns the recurring tasks of every subscription in the store.

    Subscriptions are re-read from the store on every pass, so adding or
    removing one only needs notify_changed() to take effect immediately.
    """

    def __init__(self, config: Config, store: db.JobStore, sink, sources: dict):
        self.config = config
        self.store = store
        self.sink = sink
        self.sources = sources
        self.phases: dict[tuple[str, str], TaskPhase] = {}
        # Tasks whose state could not be persisted, held back in memory
        self._deferred: dict[tuple[str, str], datetime] = {}
        self._wakeup = asyncio.Event()
        self._stopping = False

    def schedule_for(self, subscription: Subscription) -> Schedule:
        return Schedule(
            interval_seconds=self.config.interval_for(
                subscription.kind, subscription.interval_seconds,
            ),
            cron=subscription.cron,
        )

    def notify_changed(self) -> None:
        """Wake the loop so subscription changes are picked up now."""
        self._wakeup.set()

    def stop(self) -> None:
        self._stopping = True
        self._wakeup.set()

    def _load(self) -> list[tuple[Subscription, RecurringTaskState | None]]:
        def _read(txn: db.Transaction):
            subscriptions = db.list_subscriptions(txn)
            states = db.list_task_states(txn)
            return [(s, states.get((s.kind, s.source_id))) for s in subscriptions]
        return self.store.transaction(_read)

    def wake_time(
        self, subscription: Subscription, state: RecurringTaskState | None, now: datetime,
    ) -> datetime:
        wake = now
        if state and state.next_eligible_run and state.next_eligible_run > wake:
            wake = state.next_eligible_run
        deferred = self._deferred.get((subscription.kind, subscription.source_id))
        if deferred and deferred > wake:
            wake = deferred
        return wake

    async def run_due(self, now: datetime | None = None) -> list[PollOutcome]:
        """Fire every task that is due at `now`, one after another.

        Returns the outcomes of the tasks that polled successfully.
        """
        now = now or utcnow()
        tasks = self._load()

        live = {(s.kind, s.source_id) for s, _ in tasks}
        for key in list(self.phases):
            if key not in live:
                del self.phases[key]
                self._deferred.pop(key, None)

        due = []
        for subscription, state in tasks:
            key = (subscription.kind, subscription.source_id)
            if self.wake_time(subscription, state, now) <= now:
                self.phases[key] = TaskPhase.DUE
                due.append((subscription, state))
            elif self.phases.get(key) is None:
                self.phases[key] = TaskPhase.IDLE

        outcomes = []
        for subscription, state in due:
            if self._stopping:
                break
            outcome = await self.fire(subscription, state, now)
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes

    async def fire(
        self, subscription: Subscription, state: RecurringTaskState | None, now: datetime,
    ) -> PollOutcome | None:
        key = (subscription.kind, subscription.source_id)
        schedule = self.schedule_for(subscription)
        next_run = schedule.next_after(now)

        source = self.sources.get(subscription.kind)
        if source is None:
            logger.warning("No client for source kind %r, deferring %s", subscription.kind, subscription.label)
            self._deferred[key] = next_run
            self.phases[key] = TaskPhase.IDLE
            return None

        self.phases[key] = TaskPhase.POLLING
        try:
            outcome = await poll_source(
                self.store, self.sink, source, subscription, state, next_run, now,
            )
        except RateLimited as e:
            logger.info(
                "Source %s/%s rate limited (%s), next run %s",
                subscription.kind, subscription.label, e, next_run.isoformat(),
            )
            self._record_failure(subscription, next_run, str(e), rate_limited=True)
            self.phases[key] = TaskPhase.SKIPPED
            return None
        except TransientFetchError as e:
            logger.warning("Source %s/%s fetch failed: %s", subscription.kind, subscription.label, e)
            self._record_failure(subscription, next_run, str(e), rate_limited=False)
            self.phases[key] = TaskPhase.IDLE
            return None
        except StorageError as e:
            logger.error(
                "Source %s/%s: store error, deferring to %s: %s",
                subscription.kind, subscription.label, next_run.isoformat(), e,
            )
            self._deferred[key] = next_run
            self.phases[key] = TaskPhase.IDLE
            return None
        except Exception as e:
            logger.exception("Unexpected error polling %s/%s", subscription.kind, subscription.label)
            self._record_failure(subscription, next_run, f"{type(e).__name__}: {e}", rate_limited=False)
            self.phases[key] = TaskPhase.IDLE
            return None

        self._deferred.pop(key, None)
        self.phases[key] = TaskPhase.IDLE
        if outcome.status in (PollStatus.PARTIAL, PollStatus.FAILED):
            logger.debug("Unsent items of %s stay pending until %s", subscription.label, next_run.isoformat())
        return outcome

    def _record_failure(
        self, subscription: Subscription, next_run: datetime, error: str, rate_limited: bool,
    ) -> None:
        """Persist the next run after a failed fetch. The cursor is never touched."""
        key = (subscription.kind, subscription.source_id)

        def _update(txn: db.Transaction) -> None:
            if db.get_subscription(txn, subscription.kind, subscription.source_id) is None:
                return
            state = db.get_task_state(txn, subscription.kind, subscription.source_id)
            if state is None:
                state = RecurringTaskState(kind=subscription.kind, source_id=subscription.source_id)
            state.next_eligible_run = next_run
            state.last_error = error
            if rate_limited:
                state.consecutive_rate_limit_skips += 1
            db.put_task_state(txn, state)

        try:
            self.store.transaction(_update)
            self._deferred.pop(key, None)
        except StorageError as e:
            logger.error("Cannot record failure for %s: %s", subscription.label, e)
            self._deferred[key] = next_run

    def next_wake(self, now: datetime) -> datetime | None:
        """Earliest wake time across all tasks, or None if there are none."""
        tasks = self._load()
        if not tasks:
            return None
        return min(self.wake_time(s, state, now) for s, state in tasks)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        finally:
            self._wakeup.clear()

    async def run(self) -> None:
        """Loop until stop(): fire due tasks, then sleep until the next one."""
        max_idle = self.config.scheduler.max_idle_seconds
        logger.info("Recurring task driver started (max idle %ds)", max_idle)

        while not self._stopping:
            timeout = max_idle
            try:
                await self.run_due(utcnow())
                now = utcnow()
                wake = self.next_wake(now)
                if wake is not None:
                    timeout = min(max_idle, max(0.0, (wake - now).total_seconds()))
            except StorageError as e:
                logger.error("Driver pass failed, retrying in %ds: %s", max_idle, e)
            except Exception:
                logger.exception("Driver pass failed unexpectedly")

            if self._stopping:
                break
            await self._sleep(timeout)

        logger.info("Recurring task driver stopped")
