"""One-shot reminders: persisted, delivered in due order, retried until sent."""

import asyncio
import html
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from . import db
from .config import Config
from .db import ReminderRecord, ReminderStatus, StorageError, utcnow
from .matrix import SendError, localpart, mention_html

logger = logging.getLogger("roomkeeper.reminders")

PURGE_EVERY = timedelta(hours=24)

NameResolver = Callable[[str, str], Awaitable[str | None]]


def render_reminder(record: ReminderRecord, display_name: str | None = None) -> tuple[str, str]:
    """'@name: message' as (plain body, HTML body with a mention pill)."""
    who = record.who
    name = display_name or localpart(who)
    text = f"@{name}: {record.message}"
    markup = f"{mention_html(who, name)}: {html.escape(record.message)}"
    return text, markup


class ReminderScheduler:
    """Delivers reminders at their due time.

    Reminders are read back from the store on every pass, so ones scheduled
    before a restart are delivered once the loop runs again.

    A failed send leaves the reminder pending and it is retried without limit.
    The retry is not re-armed immediately: it waits
    scheduler.reminder_retry_seconds (5 s by default) so an unreachable
    homeserver is not hammered in a tight loop. Setting it to 0 restores an
    immediate retry on the next pass. The delay is held in memory only, so
    after a restart a failed reminder is tried again at once.
    """

    def __init__(
        self,
        config: Config,
        store: db.JobStore,
        sink,
        resolve_name: NameResolver | None = None,
    ):
        self.config = config
        self.store = store
        self.sink = sink
        self.resolve_name = resolve_name
        # reminder id -> earliest retry after a failed send
        self._retry_at: dict[int, datetime] = {}
        self._wakeup = asyncio.Event()
        self._stopping = False
        self._last_purge: datetime | None = None

    # ------------------------------------------------------------------
    # Record management
    # ------------------------------------------------------------------

    def schedule(
        self,
        room: str,
        creator: str,
        message: str,
        due_at: datetime,
        target: str | None = None,
        now: datetime | None = None,
    ) -> int:
        """Persist a new pending reminder, wake the loop and return its id.

        A due_at in the past is clamped to now, so it fires on the next pass.
        """
        now = now or utcnow()
        if due_at < now:
            due_at = now

        def _create(txn: db.Transaction) -> ReminderRecord:
            record = ReminderRecord(
                id=db.allocate_reminder_id(txn),
                room=room,
                creator=creator,
                target=target or "",
                message=message,
                due_at=due_at,
                created_at=now,
            )
            db.put_reminder(txn, record)
            return record

        record = self.store.transaction(_create)
        logger.info(
            "Reminder #%d scheduled by %s in %s for %s",
            record.id, creator, room, due_at.isoformat(),
        )
        self._wakeup.set()
        return record.id

    def get(self, reminder_id: int) -> ReminderRecord | None:
        return db.get_reminder(self.store, reminder_id)

    def cancel(self, reminder_id: int) -> ReminderStatus | None:
        """Cancel a pending reminder.

        Returns the reminder's status afterwards (CANCELLED, or DELIVERED if
        it already went out), or None if there is no such reminder.
        """
        def _cancel(txn: db.Transaction) -> ReminderStatus | None:
            record = db.get_reminder(txn, reminder_id)
            if record is None:
                return None
            if record.status is ReminderStatus.PENDING:
                record.status = ReminderStatus.CANCELLED
                db.put_reminder(txn, record)
            return record.status

        status = self.store.transaction(_cancel)
        if status is ReminderStatus.CANCELLED:
            self._retry_at.pop(reminder_id, None)
            logger.info("Reminder #%d cancelled", reminder_id)
        return status

    def list_pending(self, room: str | None = None) -> list[ReminderRecord]:
        return db.list_reminders(self.store, status=ReminderStatus.PENDING, room=room)

    def purge_finished(self, older_than_days: int, now: datetime | None = None) -> int:
        """Delete delivered and cancelled reminders older than the cutoff."""
        cutoff = (now or utcnow()) - timedelta(days=older_than_days)

        def _purge(txn: db.Transaction) -> int:
            count = 0
            for record in db.list_reminders(txn):
                if record.status is ReminderStatus.PENDING:
                    continue
                finished = record.delivered_at or record.due_at
                if finished < cutoff:
                    db.delete_reminder(txn, record.id)
                    count += 1
            return count

        count = self.store.transaction(_purge)
        if count:
            logger.info("Purged %d finished reminder(s)", count)
        return count

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _ready_at(self, record: ReminderRecord) -> datetime:
        retry = self._retry_at.get(record.id)
        if retry and retry > record.due_at:
            return retry
        return record.due_at

    async def _render(self, record: ReminderRecord) -> tuple[str, str]:
        display_name = None
        if self.resolve_name is not None:
            display_name = await self.resolve_name(record.room, record.who)
        return render_reminder(record, display_name)

    async def dispatch_due(self, now: datetime | None = None) -> int:
        """Send every pending reminder that is due, in (due_at, id) order.

        Returns the number delivered.
        """
        now = now or utcnow()
        due = [r for r in self.list_pending() if self._ready_at(r) <= now]
        delivered = 0

        for record in due:
            if self._stopping:
                break
            text, markup = await self._render(record)
            try:
                await self.sink.send_message(
                    record.room, text, html=markup, txn_id=f"reminder-{record.id}",
                )
            except SendError as e:
                self._record_send_failure(record, str(e), now)
                continue

            def _mark(txn: db.Transaction, reminder_id=record.id) -> bool:
                current = db.get_reminder(txn, reminder_id)
                if current is None or current.status is not ReminderStatus.PENDING:
                    return False
                current.status = ReminderStatus.DELIVERED
                current.delivered_at = now
                current.attempts += 1
                current.last_error = None
                db.put_reminder(txn, current)
                return True

            if self.store.transaction(_mark):
                delivered += 1
                logger.info("Reminder #%d delivered to %s", record.id, record.room)
            else:
                logger.warning("Reminder #%d was cancelled while being sent", record.id)
            self._retry_at.pop(record.id, None)

        return delivered

    def _record_send_failure(self, record: ReminderRecord, error: str, now: datetime) -> None:
        retry_at = now + timedelta(seconds=self.config.scheduler.reminder_retry_seconds)
        self._retry_at[record.id] = retry_at

        def _update(txn: db.Transaction) -> int:
            current = db.get_reminder(txn, record.id)
            if current is None or current.status is not ReminderStatus.PENDING:
                return 0
            current.attempts += 1
            current.last_error = error
            db.put_reminder(txn, current)
            return current.attempts

        try:
            attempts = self.store.transaction(_update)
        except StorageError as e:
            logger.error("Cannot record failed send of reminder #%d: %s", record.id, e)
            return

        warn_after = self.config.scheduler.reminder_retry_warn_after
        if warn_after and attempts and attempts % warn_after == 0:
            logger.error(
                "Reminder #%d still undelivered after %d attempts: %s",
                record.id, attempts, error,
            )
        else:
            logger.warning(
                "Reminder #%d send failed (attempt %d), retrying at %s: %s",
                record.id, attempts, retry_at.isoformat(), error,
            )

    def next_wake(self) -> datetime | None:
        pending = self.list_pending()
        if not pending:
            return None
        return min(self._ready_at(r) for r in pending)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def notify_changed(self) -> None:
        self._wakeup.set()

    def stop(self) -> None:
        self._stopping = True
        self._wakeup.set()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        finally:
            self._wakeup.clear()

    def _maybe_purge(self, now: datetime) -> None:
        if self._last_purge and now - self._last_purge < PURGE_EVERY:
            return
        self._last_purge = now
        retention = self.config.scheduler.reminder_retention_days
        if retention > 0:
            self.purge_finished(retention, now)

    async def run(self) -> None:
        """Loop until stop(): deliver due reminders, sleep until the next one."""
        max_idle = self.config.scheduler.max_idle_seconds
        logger.info("Reminder scheduler started")

        while not self._stopping:
            timeout = max_idle
            try:
                now = utcnow()
                self._maybe_purge(now)
                await self.dispatch_due(now)
                wake = self.next_wake()
                if wake is not None:
                    timeout = min(max_idle, max(0.0, (wake - utcnow()).total_seconds()))
            except StorageError as e:
                logger.error("Reminder pass failed, retrying in %ds: %s", max_idle, e)
            except Exception:
                logger.exception("Reminder pass failed unexpectedly")

            if self._stopping:
                break
            await self._sleep(timeout)

        logger.info("Reminder scheduler stopped")
