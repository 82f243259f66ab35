"""leave-helper: mirror approved Lark leave requests onto Lark calendars as time-off events."""

__version__ = "0.1.0"
