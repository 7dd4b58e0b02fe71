"""roomkeeper - Matrix bot for feed digests, GitHub notifications and reminders."""

__version__ = "0.1.0"
