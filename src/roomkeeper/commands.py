"""!command dispatch system — room commands handled by the bot."""

import logging
import re
import shlex
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from . import db
from .access import Role, is_authorized
from .config import Config
from .db import ReminderStatus, Subscription, utcnow
from .matrix import SendError, split_message
from .sources import FetchError

logger = logging.getLogger("roomkeeper.commands")


@dataclass
class CommandContext:
    """Everything a handler needs for one incoming command."""
    config: Config
    store: db.JobStore
    sink: object
    room: str
    sender: str
    driver: object = None           # RecurringTaskDriver
    reminders: object = None        # ReminderScheduler
    sources: dict = field(default_factory=dict)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.config.timezone)


# Args: (context, args_str). Returns the reply text, or "" for no reply.
CommandHandler = Callable[[CommandContext, str], Awaitable[str]]

# Command registry: name -> (handler, role, help_text)
COMMANDS: dict[str, tuple[CommandHandler, Role, str]] = {}


def command(name: str, role: Role, help_text: str):
    """Decorator to register a command handler."""

    def decorator(func: CommandHandler):
        COMMANDS[name] = (func, role, help_text)
        return func

    return decorator


def parse_command(content: str) -> tuple[str, str] | None:
    """Parse a !command message. Returns (command_name, args_str) or None."""
    content = content.strip()
    if not content.startswith("!"):
        return None
    match = re.match(r"^!([\w-]+)\s*(.*)", content, re.DOTALL)
    if not match:
        return None
    return (match.group(1).lower(), match.group(2).strip())


def parse_arguments(args: str) -> list[str]:
    """Split arguments honouring single and double quotes.

    Falls back to a plain whitespace split when quotes are unbalanced.
    """
    try:
        return shlex.split(args)
    except ValueError:
        return args.split()


# =============================================================================
# Time expressions
# =============================================================================

# Unit -> seconds
TIME_UNITS = {
    "s": 1, "sec": 1, "secs": 1, "second": 1, "seconds": 1,
    "m": 60, "min": 60, "mins": 60, "minute": 60, "minutes": 60,
    "h": 3600, "hr": 3600, "hrs": 3600, "hour": 3600, "hours": 3600,
    "d": 86400, "day": 86400, "days": 86400,
    "w": 604800, "week": 604800, "weeks": 604800,
}

_DURATION_PART = re.compile(r"(\d+)\s*([a-z]+)")


def parse_duration(text: str) -> timedelta | None:
    """'90s', '1h30m', '2d 4h', '5 minutes' -> timedelta, or None."""
    text = text.strip().lower()
    if not text:
        return None
    pos = 0
    seconds = 0
    for match in _DURATION_PART.finditer(text):
        if text[pos:match.start()].strip():
            return None
        multiplier = TIME_UNITS.get(match.group(2))
        if multiplier is None:
            return None
        seconds += int(match.group(1)) * multiplier
        pos = match.end()
    if pos == 0 or text[pos:].strip():
        return None
    return timedelta(seconds=seconds)


def parse_when(text: str, now: datetime, tz: ZoneInfo) -> datetime | None:
    """Resolve a duration, an ISO-8601 timestamp or HH:MM to an aware datetime.

    Naive timestamps are taken in tz. A bare HH:MM means its next occurrence.
    """
    duration = parse_duration(text)
    if duration is not None:
        return now + duration

    text = text.strip()
    match = re.fullmatch(r"(\d{1,2}):(\d{2})", text)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour > 23 or minute > 59:
            return None
        local_now = now.astimezone(tz)
        target = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if target <= local_now:
            target += timedelta(days=1)
        return target

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def format_local(value: datetime, tz: ZoneInfo) -> str:
    return value.astimezone(tz).strftime("%Y-%m-%d %H:%M %Z")


def format_delta(delta: timedelta) -> str:
    seconds = max(0, int(delta.total_seconds()))
    parts = []
    for unit, size in (("d", 86400), ("h", 3600), ("m", 60), ("s", 1)):
        if seconds >= size:
            parts.append(f"{seconds // size}{unit}")
            seconds %= size
    return "".join(parts) or "0s"


# =============================================================================
# Dispatch
# =============================================================================


async def _reply(ctx: CommandContext, text: str) -> None:
    for part in split_message(text):
        await ctx.sink.send_message(ctx.room, part)


async def dispatch(ctx: CommandContext, content: str) -> bool:
    """
    Try to dispatch content as a !command.
    Returns True if handled (command executed or error posted), False if not a command.
    """
    parsed = parse_command(content)
    if parsed is None:
        return False

    cmd_name, args_str = parsed

    try:
        if cmd_name not in COMMANDS:
            await _reply(ctx, f"Unknown command !{cmd_name}. Type !help for available commands.")
            return True

        handler, role, _ = COMMANDS[cmd_name]
        if not is_authorized(ctx.config.access, ctx.sender, role):
            logger.info("Denied !%s for %s in %s", cmd_name, ctx.sender, ctx.room)
            await _reply(ctx, f"You are not authorized to use !{cmd_name}.")
            return True

        logger.info("Command !%s from %s in %s", cmd_name, ctx.sender, ctx.room)
        try:
            response = await handler(ctx, args_str)
        except Exception as e:
            logger.error("Command !%s failed: %s", cmd_name, e, exc_info=True)
            await _reply(ctx, f"Command !{cmd_name} failed: {e}")
            return True

        if response:
            await _reply(ctx, response)
    except SendError as e:
        logger.warning("Could not reply to !%s in %s: %s", cmd_name, ctx.room, e)

    return True


# =============================================================================
# Command implementations
# =============================================================================


@command("help", Role.PUBLIC, "List available commands")
async def cmd_help(ctx, args):
    lines = ["Available commands:"]
    for name, (_, role, help_text) in sorted(COMMANDS.items()):
        if is_authorized(ctx.config.access, ctx.sender, role):
            lines.append(f"  !{name} -- {help_text}")
    return "\n".join(lines)


@command("remind", Role.MOD, "Set a reminder: !remind [me|@user:server] <when> <message>")
async def cmd_remind(ctx, args):
    usage = 'Usage: !remind [me|@user:server] <when> <message>, e.g. !remind me "1h 30m" stretch'
    tokens = parse_arguments(args)
    if not tokens:
        return usage

    target = ctx.sender
    if tokens[0].lower() == "me":
        tokens = tokens[1:]
    elif tokens[0].startswith("@"):
        if ":" not in tokens[0]:
            return f"Not a full user id: {tokens[0]} (expected @user:server)"
        target = tokens[0]
        tokens = tokens[1:]

    now = utcnow()
    due_at = None
    message = ""
    # Longest leading run of tokens that reads as a time, so "1h 30m" works unquoted
    for split in range(len(tokens) - 1, 0, -1):
        due_at = parse_when(" ".join(tokens[:split]), now, ctx.tz)
        if due_at is not None:
            message = " ".join(tokens[split:]).strip()
            break

    if due_at is None or not message:
        return usage

    reminder_id = ctx.reminders.schedule(
        ctx.room, ctx.sender, message, due_at,
        target=None if target == ctx.sender else target,
        now=now,
    )
    due_at = max(due_at, now)
    return (
        f"Reminder #{reminder_id} set for {format_local(due_at, ctx.tz)} "
        f"(in {format_delta(due_at - now)})."
    )


@command("reminders", Role.MOD, "List pending reminders in this room")
async def cmd_reminders(ctx, args):
    pending = ctx.reminders.list_pending(ctx.room)
    if not pending:
        return "No pending reminders in this room."
    lines = ["Pending reminders:"]
    for record in pending:
        line = f"  #{record.id} {format_local(record.due_at, ctx.tz)} for {record.who}: {record.message}"
        if record.attempts:
            line += f" (failed {record.attempts}x: {record.last_error})"
        lines.append(line)
    return "\n".join(lines)


@command("cancel-reminder", Role.MOD, "Cancel a reminder: !cancel-reminder <id>")
async def cmd_cancel_reminder(ctx, args):
    arg = args.strip().lstrip("#")
    if not arg.isdigit():
        return "Usage: !cancel-reminder <id>"
    reminder_id = int(arg)

    record = ctx.reminders.get(reminder_id)
    if record is None:
        return f"No reminder #{reminder_id}."
    if record.creator != ctx.sender and not ctx.config.access.is_admin(ctx.sender):
        return f"Only {record.creator} or an admin can cancel reminder #{reminder_id}."

    status = ctx.reminders.cancel(reminder_id)
    if status is ReminderStatus.CANCELLED:
        return f"Reminder #{reminder_id} cancelled."
    if status is ReminderStatus.DELIVERED:
        return f"Reminder #{reminder_id} was already delivered."
    return f"No reminder #{reminder_id}."


# =============================================================================
# Subscriptions
# =============================================================================


def _describe_subscription(ctx: CommandContext, subscription: Subscription) -> str:
    schedule = ctx.driver.schedule_for(subscription).describe() if ctx.driver else ""
    line = f"  {subscription.label}"
    if subscription.name and subscription.kind == "rss":
        line += f" <{subscription.target}>"
    if schedule:
        line += f" ({schedule})"
    if subscription.from_config:
        line += " [config]"
    return line


def _clear_subscriptions(ctx: CommandContext, kind: str) -> tuple[int, int]:
    """Remove chat-created subscriptions of kind in the room.

    Returns (removed, kept) where kept counts config-declared ones.
    """
    def _clear(txn: db.Transaction) -> tuple[int, int]:
        removed = kept = 0
        for subscription in db.list_subscriptions(txn, kind=kind, room=ctx.room):
            if subscription.from_config:
                kept += 1
                continue
            db.remove_subscription(txn, kind, subscription.source_id)
            removed += 1
        return removed, kept

    result = ctx.store.transaction(_clear)
    if ctx.driver:
        ctx.driver.notify_changed()
    return result


def _add_subscription(ctx: CommandContext, subscription: Subscription) -> bool:
    def _add(txn: db.Transaction) -> bool:
        if db.get_subscription(txn, subscription.kind, subscription.source_id):
            return False
        db.put_subscription(txn, subscription)
        return True

    added = ctx.store.transaction(_add)
    if added and ctx.driver:
        ctx.driver.notify_changed()
    return added


def _remove_subscription(ctx: CommandContext, kind: str, target: str) -> str | None:
    """Remove one subscription. Returns None on success, else a reason."""
    source_id = db.make_source_id(ctx.room, target)

    def _remove(txn: db.Transaction) -> str | None:
        existing = db.get_subscription(txn, kind, source_id)
        if existing is None:
            return "not subscribed"
        if existing.from_config:
            return "declared in the config file"
        db.remove_subscription(txn, kind, source_id)
        return None

    reason = ctx.store.transaction(_remove)
    if reason is None and ctx.driver:
        ctx.driver.notify_changed()
    return reason


@command("rss", Role.MOD, "Feed subscriptions: !rss list|clear|enable <url>|disable <url>")
async def cmd_rss(ctx, args):
    usage = "Usage: !rss list | !rss clear | !rss enable <url> | !rss disable <url>"
    tokens = parse_arguments(args)
    action = tokens[0].lower() if tokens else "list"

    if action == "list":
        subscriptions = db.list_subscriptions(ctx.store, kind="rss", room=ctx.room)
        if not subscriptions:
            return "No feeds in this room."
        return "\n".join(["Feeds:"] + [_describe_subscription(ctx, s) for s in subscriptions])

    if action == "clear":
        removed, kept = _clear_subscriptions(ctx, "rss")
        reply = f"Removed {removed} feed(s)."
        if kept:
            reply += f" {kept} feed(s) declared in the config file were kept."
        return reply

    if action in ("enable", "disable") and len(tokens) == 2:
        url = tokens[1]
        if action == "disable":
            reason = _remove_subscription(ctx, "rss", url)
            return f"Feed {url} removed." if reason is None else f"Cannot remove {url}: {reason}."

        try:
            title = await ctx.sources["rss"].validate(url)
        except FetchError as e:
            return f"Not a usable feed: {e}"
        subscription = Subscription(
            kind="rss",
            source_id=db.make_source_id(ctx.room, url),
            room=ctx.room,
            target=url,
            name=title if title != url else "",
        )
        if not _add_subscription(ctx, subscription):
            return f"Already subscribed to {url}."
        return f"Subscribed to {title}."

    return usage


@command("github", Role.MOD, "GitHub notifications: !github list|clear|enable <user> <token>|disable <user>")
async def cmd_github(ctx, args):
    usage = "Usage: !github list | !github clear | !github enable <user> <token> | !github disable <user>"
    tokens = parse_arguments(args)
    action = tokens[0].lower() if tokens else "list"

    if action == "list":
        subscriptions = db.list_subscriptions(ctx.store, kind="github", room=ctx.room)
        if not subscriptions:
            return "No GitHub accounts in this room."
        return "\n".join(["GitHub accounts:"] + [_describe_subscription(ctx, s) for s in subscriptions])

    if action == "clear":
        removed, kept = _clear_subscriptions(ctx, "github")
        reply = f"Removed {removed} GitHub account(s)."
        if kept:
            reply += f" {kept} account(s) declared in the config file were kept."
        return reply

    if action == "disable" and len(tokens) == 2:
        user = tokens[1]
        reason = _remove_subscription(ctx, "github", user)
        return f"GitHub notifications for {user} removed." if reason is None else f"Cannot remove {user}: {reason}."

    if action == "enable" and len(tokens) == 3:
        user, token = tokens[1], tokens[2]
        if not await ctx.sources["github"].validate(user, token):
            return f"GitHub rejected the token for {user}."
        subscription = Subscription(
            kind="github",
            source_id=db.make_source_id(ctx.room, user),
            room=ctx.room,
            target=user,
            token=token,
        )
        if not _add_subscription(ctx, subscription):
            return f"Already watching GitHub notifications for {user}."
        return f"Watching GitHub notifications for {user}. Consider redacting the message with the token."

    return usage


@command("status", Role.MOD, "Show polling state of this room's subscriptions")
async def cmd_status(ctx, args):
    def _read(txn: db.Transaction):
        return db.list_subscriptions(txn, room=ctx.room), db.list_task_states(txn)

    subscriptions, states = ctx.store.transaction(_read)
    pending = ctx.reminders.list_pending(ctx.room) if ctx.reminders else []

    lines = [f"Subscriptions: {len(subscriptions)}, pending reminders: {len(pending)}"]
    for subscription in subscriptions:
        state = states.get((subscription.kind, subscription.source_id))
        lines.append(f"{subscription.kind}: {subscription.label}")
        if state is None:
            lines.append("  not polled yet")
            continue
        if state.cursor:
            lines.append(f"  last item: {state.cursor.item_id}")
        if state.next_eligible_run:
            lines.append(f"  next run: {format_local(state.next_eligible_run, ctx.tz)}")
        if state.last_success_at:
            lines.append(f"  last success: {format_local(state.last_success_at, ctx.tz)}")
        if state.consecutive_rate_limit_skips:
            lines.append(f"  rate-limit skips: {state.consecutive_rate_limit_skips}")
        if state.last_error:
            lines.append(f"  last error: {state.last_error}")
    return "\n".join(lines)


# =============================================================================
# Room membership
# =============================================================================


@command("join", Role.ADMIN, "Join a room: !join <room id or alias>")
async def cmd_join(ctx, args):
    tokens = parse_arguments(args)
    if len(tokens) != 1:
        return "Usage: !join <room id or alias>"
    room_id = await ctx.sink.join_room(tokens[0])
    return f"Joined {room_id}."


@command("leave", Role.ADMIN, "Leave this room and drop its subscriptions")
async def cmd_leave(ctx, args):
    def _drop(txn: db.Transaction) -> int:
        subscriptions = db.list_subscriptions(txn, room=ctx.room)
        for subscription in subscriptions:
            db.remove_subscription(txn, subscription.kind, subscription.source_id)
        return len(subscriptions)

    removed = ctx.store.transaction(_drop)
    if ctx.driver:
        ctx.driver.notify_changed()
    logger.info("Leaving %s on request of %s (%d subscription(s) removed)", ctx.room, ctx.sender, removed)
    await _reply(ctx, f"Leaving. Removed {removed} subscription(s).")
    await ctx.sink.leave_room(ctx.room)
    return ""
