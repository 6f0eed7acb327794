"""Route modules for the API."""

from . import events, notifications, repositories, schedules, volumes

__all__ = [
    "volumes",
    "repositories",
    "schedules",
    "notifications",
    "events",
]
