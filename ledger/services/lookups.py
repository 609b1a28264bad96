"""
Shared lookups for the ledger services: identifier resolution, membership
checks, pagination and translation of storage failures.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import List

from django.db import DatabaseError

from ledger.errors import NotFoundError, PersistenceError, ValidationError
from ledger.models import ExpenseGroup, GroupMembership, Participant
from ledger.utils.validation import normalize_page, validate_uuid


logger = logging.getLogger(__name__)


def resolve_user(user_uuid, field: str = "user_id") -> Participant:
    value = validate_uuid(user_uuid, field)
    try:
        return Participant.objects.get(uuid=value)
    except Participant.DoesNotExist:
        raise NotFoundError("User")


def resolve_group(group_uuid, field: str = "group_id") -> ExpenseGroup:
    value = validate_uuid(group_uuid, field)
    try:
        return ExpenseGroup.objects.select_related("created_by").get(uuid=value)
    except ExpenseGroup.DoesNotExist:
        raise NotFoundError("Group")


def is_member(group, participant) -> bool:
    return GroupMembership.objects.filter(group=group, participant=participant).exists()


def require_member(group, participant, role: str = "User"):
    if not is_member(group, participant):
        raise ValidationError(f"{role} is not a member of the group")


@dataclass
class Page:
    items: List = field(default_factory=list)
    total_count: int = 0
    page: int = 1
    limit: int = 10

    @property
    def total_pages(self) -> int:
        if not self.total_count:
            return 0
        return (self.total_count + self.limit - 1) // self.limit

    def meta(self) -> dict:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total_count,
            "total_pages": self.total_pages,
        }


def paginate(queryset, page=1, limit=None) -> Page:
    page, limit = normalize_page(page, limit)
    offset = (page - 1) * limit
    return Page(
        items=list(queryset[offset:offset + limit]),
        total_count=queryset.count(),
        page=page,
        limit=limit,
    )


@contextmanager
def storage_errors(action: str):
    """Re-raise database failures as PersistenceError, logging the cause."""
    try:
        yield
    except DatabaseError as exc:
        logger.exception("Database error while %s", action)
        raise PersistenceError(cause=exc) from exc
