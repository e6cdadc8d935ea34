"""Walk-in clinic token queue: numbering, ETAs, status transitions and live updates."""

__version__ = "1.0.0"
