"""Database models and utilities."""

from .models import (
    TicketActionEventTable,
    TicketCommentTable,
    TicketTable,
    TicketTagTable,
    UserTable,
)

__all__ = [
    "TicketActionEventTable",
    "TicketCommentTable",
    "TicketTable",
    "TicketTagTable",
    "UserTable",
]
