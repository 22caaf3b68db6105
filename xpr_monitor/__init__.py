"""XPR node monitor: health checks, bounded auto-restart and a Telegram command bot."""

__version__ = "2.0.0"
