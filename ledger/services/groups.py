"""
Groups and membership.

A group is created together with its first membership (the creator).
Members can only leave once every balance they hold in the group is zero,
otherwise simplification could suggest payments to or from someone who is
no longer in the group.
"""

import logging

from django.db import IntegrityError, transaction

from ledger.balances import default_ledger
from ledger.errors import AlreadyExistsError, NotFoundError, ValidationError
from ledger.models import ExpenseGroup, GroupMembership
from ledger.services.lookups import paginate, resolve_group, resolve_user, storage_errors
from ledger.utils.money import format_money
from ledger.utils.validation import validate_description, validate_name


logger = logging.getLogger(__name__)


def create_group(name, description, creator_uuid) -> ExpenseGroup:
    name = validate_name(name)
    description = validate_description(description, required=False)
    creator = resolve_user(creator_uuid, "creator_id")

    with storage_errors("creating group"), transaction.atomic():
        group = ExpenseGroup.objects.create(name=name, description=description, created_by=creator)
        GroupMembership.objects.create(group=group, participant=creator)

    logger.info("Created group %s by user %s", group.uuid, creator.uuid)
    return group


def get_group(group_uuid) -> ExpenseGroup:
    return resolve_group(group_uuid)


def list_groups(page=1, limit=None):
    queryset = ExpenseGroup.objects.select_related("created_by").order_by("-created_at", "-id")
    return paginate(queryset, page, limit)


def get_user_groups(user_uuid, page=1, limit=None):
    user = resolve_user(user_uuid)
    queryset = (
        ExpenseGroup.objects.filter(memberships__participant=user)
        .select_related("created_by")
        .order_by("-created_at", "-id")
    )
    return paginate(queryset, page, limit)


def get_group_members(group_uuid):
    group = resolve_group(group_uuid)
    memberships = GroupMembership.objects.filter(group=group).select_related("participant")
    return [membership.participant for membership in memberships.order_by("joined_at", "id")]


def add_member(group_uuid, user_uuid) -> GroupMembership:
    group = resolve_group(group_uuid)
    user = resolve_user(user_uuid)

    if GroupMembership.objects.filter(group=group, participant=user).exists():
        raise AlreadyExistsError("Group member")

    with storage_errors("adding group member"):
        try:
            with transaction.atomic():
                membership = GroupMembership.objects.create(group=group, participant=user)
        except IntegrityError:
            raise AlreadyExistsError("Group member")

    logger.info("Added user %s to group %s", user.uuid, group.uuid)
    return membership


def remove_member(group_uuid, user_uuid, ledger=None):
    """
    Remove a member from a group.

    Raises:
        NotFoundError: the user is not a member
        ValidationError: the member still has a non-zero balance in some currency
    """
    ledger = ledger or default_ledger()
    group = resolve_group(group_uuid)
    user = resolve_user(user_uuid)

    membership = GroupMembership.objects.filter(group=group, participant=user).first()
    if membership is None:
        raise NotFoundError("Group member")

    outstanding = {
        currency: balance
        for currency, balance in ledger.get_participant_balances(group, user).items()
        if balance != 0
    }
    if outstanding:
        details = ", ".join(
            f"{format_money(balance)} {currency}" for currency, balance in sorted(outstanding.items())
        )
        raise ValidationError(f"Cannot remove a member with an outstanding balance ({details})")

    with storage_errors("removing group member"):
        membership.delete()

    logger.info("Removed user %s from group %s", user.uuid, group.uuid)
