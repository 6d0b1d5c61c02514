"""Input validation and response shaping for the ticket engine.

Validators return a list of ``FieldError`` so callers can report every problem
at once; ``ensure_valid`` turns a non-empty list into ``TicketValidationError``.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterable, Sequence

from .errors import FieldError, TicketValidationError
from .models import Impact, Pagination, Priority, TicketChanges, TicketDraft, TicketFilters, UserRecord
from .state import TicketLifecycle, TicketType

TITLE_MAX_LENGTH = 255
TAG_MAX_LENGTH = 100

SORTABLE_FIELDS = frozenset({"created_at", "updated_at", "title", "status", "priority", "impact"})
SORT_ORDERS = frozenset({"asc", "desc"})

_USER_PUBLIC_FIELDS = ("id", "email", "display_name", "role", "department", "is_active")


def allowed_impacts(ticket_type: TicketType) -> frozenset[Impact]:
    if ticket_type is TicketType.CHANGE:
        return frozenset(Impact)
    return frozenset(Impact) - {Impact.ENTERPRISE}


def ensure_valid(errors: Sequence[FieldError]) -> None:
    if errors:
        raise TicketValidationError(errors)


def _is_blank(value: str | None) -> bool:
    return value is None or not value.strip()


def _check_title(value: str | None, errors: list[FieldError]) -> None:
    if _is_blank(value):
        errors.append(FieldError("title", "Title is required"))
    elif len(value or "") > TITLE_MAX_LENGTH:
        errors.append(FieldError("title", f"Title must be at most {TITLE_MAX_LENGTH} characters"))


def _check_enum(name: str, value: str, enum_type: type[Enum], allowed: Iterable[Enum], errors: list[FieldError]) -> None:
    allowed_values = sorted(member.value for member in allowed)
    try:
        member = enum_type(value)
    except ValueError:
        errors.append(FieldError(name, f"Must be one of: {', '.join(allowed_values)}"))
        return
    if member.value not in allowed_values:
        errors.append(FieldError(name, f"Must be one of: {', '.join(allowed_values)}"))


def _check_tags(tags: Iterable[str], errors: list[FieldError]) -> None:
    for tag in tags:
        if _is_blank(tag) or len(tag) > TAG_MAX_LENGTH:
            errors.append(FieldError("tags", f"Tags must be non-empty and at most {TAG_MAX_LENGTH} characters"))
            return


def validate_draft(lifecycle: TicketLifecycle, draft: TicketDraft) -> list[FieldError]:
    errors: list[FieldError] = []
    _check_title(draft.title, errors)
    if _is_blank(draft.description):
        errors.append(FieldError("description", "Description is required"))
    _check_enum("priority", draft.priority, Priority, Priority, errors)
    _check_enum("impact", draft.impact, Impact, allowed_impacts(lifecycle.ticket_type), errors)
    if draft.assignee_id is not None and _is_blank(draft.assignee_id):
        errors.append(FieldError("assignee_id", "Assignee id must not be empty"))
    _check_tags(draft.tags, errors)
    return errors


def validate_changes(lifecycle: TicketLifecycle, changes: TicketChanges) -> list[FieldError]:
    errors: list[FieldError] = []
    if not changes.changed_fields():
        errors.append(FieldError("changes", "No fields provided for update"))
        return errors
    if changes.title is not None:
        _check_title(changes.title, errors)
    if changes.description is not None and _is_blank(changes.description):
        errors.append(FieldError("description", "Description must not be empty"))
    if changes.priority is not None:
        _check_enum("priority", changes.priority, Priority, Priority, errors)
    if changes.impact is not None:
        _check_enum("impact", changes.impact, Impact, allowed_impacts(lifecycle.ticket_type), errors)
    if changes.tags is not None:
        _check_tags(changes.tags, errors)
    overlap = set(changes.add_related_ids) & set(changes.remove_related_ids)
    if overlap:
        errors.append(FieldError("related_ids", "The same ticket cannot be linked and unlinked at once"))
    return errors


def validate_comment(content: str | None) -> list[FieldError]:
    if _is_blank(content):
        return [FieldError("content", "Comment content is required")]
    return []


def validate_query(
    lifecycle: TicketLifecycle,
    filters: TicketFilters,
    pagination: Pagination,
    *,
    max_limit: int,
) -> list[FieldError]:
    errors: list[FieldError] = []
    for status in filters.statuses:
        _check_enum("status", status, lifecycle.statuses, lifecycle.statuses, errors)
    for priority in filters.priorities:
        _check_enum("priority", priority, Priority, Priority, errors)
    for impact in filters.impacts:
        _check_enum("impact", impact, Impact, allowed_impacts(lifecycle.ticket_type), errors)
    if filters.created_from and filters.created_to and filters.created_from > filters.created_to:
        errors.append(FieldError("created_from", "Start of the date range must not be after its end"))
    if pagination.page < 1:
        errors.append(FieldError("page", "Page numbers start at 1"))
    if not 1 <= pagination.limit <= max_limit:
        errors.append(FieldError("limit", f"Limit must be between 1 and {max_limit}"))
    if pagination.sort_by not in SORTABLE_FIELDS:
        errors.append(FieldError("sort_by", f"Must be one of: {', '.join(sorted(SORTABLE_FIELDS))}"))
    if pagination.sort_order.lower() not in SORT_ORDERS:
        errors.append(FieldError("sort_order", "Must be 'asc' or 'desc'"))
    return errors


def coerce_status(lifecycle: TicketLifecycle, value: str | Enum) -> Enum:
    """Return the lifecycle's status member for ``value`` or raise a validation error."""

    try:
        return lifecycle.parse_status(value)
    except ValueError:
        allowed = ", ".join(status.value for status in lifecycle.statuses)
        raise TicketValidationError([FieldError("status", f"Must be one of: {allowed}")]) from None


def public_user(record: UserRecord) -> dict[str, Any]:
    """Shape a user for callers, leaving out credentials."""

    payload = {name: getattr(record, name) for name in _USER_PUBLIC_FIELDS}
    payload["role"] = record.role.value
    return payload
