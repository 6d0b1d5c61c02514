"""Route modules exposed by the API package."""

from . import ping, tickets, users

__all__ = ["ping", "tickets", "users"]
