"""Configuration loading for roomkeeper."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import tomli

from .access import AccessControlList

logger = logging.getLogger("roomkeeper.config")

# Source kinds the driver knows how to poll
SOURCE_KINDS = ("rss", "github")


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"           # INFO or DEBUG
    output: str = "console"       # console, file, or both
    file: str = ""                # log file path
    rotate: bool = True           # enable rotation
    max_size_mb: int = 10         # max file size before rotation
    backup_count: int = 5         # rotated files to keep


@dataclass
class MatrixConfig:
    homeserver: str = "https://matrix.org"
    user_id: str = ""             # full MXID, e.g. @roomkeeper:matrix.org
    password: str = ""
    access_token: str = ""        # skips password login when set
    device_name: str = "roomkeeper"
    request_timeout: int = 10     # seconds, for non-sync requests


@dataclass
class IntervalsConfig:
    """Default poll interval per source kind (seconds)."""
    rss: int = 600
    github: int = 300

    def for_kind(self, kind: str) -> int:
        return getattr(self, kind, self.rss)


@dataclass
class SchedulerConfig:
    max_idle_seconds: int = 60  # driver re-reads subscriptions at least this often
    reminder_retry_seconds: int = 5  # delay before re-sending a failed reminder
    reminder_retry_warn_after: int = 10  # log an error every N failed attempts
    reminder_retention_days: int = 30  # purge delivered/cancelled reminders older than this
    sync_timeout: int = 30  # long-poll timeout for /sync (seconds)
    sync_retry_seconds: int = 10  # wait after a failed sync
    lock_path: str = "/tmp/roomkeeper-daemon.lock"


@dataclass
class SourceConfig:
    """A feed or GitHub subscription declared in the config file."""
    kind: str                       # "rss" or "github"
    room: str
    url: str = ""                   # rss
    user: str = ""                  # github login
    token: str = ""                 # github token
    name: str = ""
    interval_seconds: int = 0       # 0 = kind default
    cron: str = ""                  # cron expression, overrides interval
    digest: bool = False            # batch new items into one message

    @property
    def target(self) -> str:
        return self.url if self.kind == "rss" else self.user


@dataclass
class Config:
    bot_name: str = "roomkeeper"
    db_path: Path = field(default_factory=lambda: Path("data/roomkeeper.db"))
    timezone: str = "UTC"  # for naive timestamps in !remind
    matrix: MatrixConfig = field(default_factory=MatrixConfig)
    access: AccessControlList = field(default_factory=AccessControlList)
    intervals: IntervalsConfig = field(default_factory=IntervalsConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sources: list[SourceConfig] = field(default_factory=list)

    def interval_for(self, kind: str, override: int = 0) -> int:
        """Effective interval for a source (per-source override > kind default)."""
        if override > 0:
            return override
        return self.intervals.for_kind(kind)


def _parse_sources(entries: list[dict]) -> list[SourceConfig]:
    sources = []
    for s in entries:
        kind = s.get("kind", "rss")
        if kind not in SOURCE_KINDS:
            logger.warning("Ignoring source with unknown kind %r", kind)
            continue
        if not s.get("room"):
            logger.warning("Ignoring %s source without a room", kind)
            continue
        sources.append(SourceConfig(
            kind=kind,
            room=s["room"],
            url=s.get("url", ""),
            user=s.get("user", ""),
            token=s.get("token", ""),
            name=s.get("name", ""),
            interval_seconds=s.get("interval_seconds", 0),
            cron=s.get("cron", ""),
            digest=s.get("digest", False),
        ))
    return sources


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from TOML file."""
    if config_path is None:
        candidates = [
            Path("config/config.toml"),
            Path.home() / ".config/roomkeeper/config.toml",
            Path("/etc/roomkeeper/config.toml"),
        ]
        for candidate in candidates:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None or not config_path.exists():
        config = Config()
        _apply_env_overrides(config)
        return config

    with open(config_path, "rb") as f:
        data = tomli.load(f)

    config = Config()

    if "bot_name" in data:
        config.bot_name = data["bot_name"]

    if "db_path" in data:
        config.db_path = Path(data["db_path"])

    if "timezone" in data:
        config.timezone = data["timezone"]

    if "matrix" in data:
        mx = data["matrix"]
        config.matrix = MatrixConfig(
            homeserver=mx.get("homeserver", "https://matrix.org"),
            user_id=mx.get("user_id", ""),
            password=mx.get("password", ""),
            access_token=mx.get("access_token", ""),
            device_name=mx.get("device_name", "roomkeeper"),
            request_timeout=mx.get("request_timeout", 10),
        )

    if "access" in data:
        acc = data["access"]
        config.access = AccessControlList(
            admins=frozenset(acc.get("admins", [])),
            mods=frozenset(acc.get("mods", [])),
        )

    if "intervals" in data:
        iv = data["intervals"]
        config.intervals = IntervalsConfig(
            rss=iv.get("rss", 600),
            github=iv.get("github", 300),
        )

    if "scheduler" in data:
        sched = data["scheduler"]
        config.scheduler = SchedulerConfig(
            max_idle_seconds=sched.get("max_idle_seconds", 60),
            reminder_retry_seconds=sched.get("reminder_retry_seconds", 5),
            reminder_retry_warn_after=sched.get("reminder_retry_warn_after", 10),
            reminder_retention_days=sched.get("reminder_retention_days", 30),
            sync_timeout=sched.get("sync_timeout", 30),
            sync_retry_seconds=sched.get("sync_retry_seconds", 10),
            lock_path=sched.get("lock_path", "/tmp/roomkeeper-daemon.lock"),
        )

    if "logging" in data:
        log = data["logging"]
        config.logging = LoggingConfig(
            level=log.get("level", "INFO"),
            output=log.get("output", "console"),
            file=log.get("file", ""),
            rotate=log.get("rotate", True),
            max_size_mb=log.get("max_size_mb", 10),
            backup_count=log.get("backup_count", 5),
        )

    if "sources" in data:
        config.sources = _parse_sources(data["sources"])

    _apply_env_overrides(config)
    return config


def _apply_env_overrides(config: Config) -> None:
    """Environment variable overrides for secrets (allows EnvironmentFile= usage)."""
    for env_var, section, field_name in [
        ("ROOMKEEPER_MATRIX_PASSWORD", "matrix", "password"),
        ("ROOMKEEPER_MATRIX_ACCESS_TOKEN", "matrix", "access_token"),
    ]:
        val = os.environ.get(env_var)
        if val:
            setattr(getattr(config, section), field_name, val)

    # A single token for every config-declared GitHub source without its own
    github_token = os.environ.get("ROOMKEEPER_GITHUB_TOKEN")
    if github_token:
        for source in config.sources:
            if source.kind == "github" and not source.token:
                source.token = github_token
