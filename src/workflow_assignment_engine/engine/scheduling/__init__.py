"""Recurring schedules, their calendar arithmetic and the single-leader poller."""

__all__: list[str] = []
