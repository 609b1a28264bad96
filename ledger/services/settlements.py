"""
Settlement Engine and debt simplification.

🔒 A settlement moves money from a debtor to anyone else in the group:
    from participant:  −amount   (owes less)
    to participant:    +amount   (is owed less)

🔒 amount ≤ current balance of the from participant (raw signed compare).
A participant with a zero or negative balance owes nothing and can never
settle. The check runs once up front and again on the locked balance row
inside the unit of work, so two concurrent settlements cannot both spend
the same debt.

On PostgreSQL and MySQL the re-check holds a row lock on the balance. SQLite
has no row locks; the database runs with transaction_mode IMMEDIATE, so the
second writer either waits for the first to commit and then fails the
re-check, or gives up on the lock and surfaces as PersistenceError.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from django.db import transaction
from django.db.models import Q

from ledger.balances import default_ledger
from ledger.errors import InsufficientDebtError, NotFoundError, ValidationError
from ledger.models import Settlement
from ledger.services.lookups import (
    paginate,
    require_member,
    resolve_group,
    resolve_user,
    storage_errors,
)
from ledger.utils.money import ZERO
from ledger.utils.simplification import PaymentSuggestion, simplify_balances
from ledger.utils.validation import (
    validate_amount,
    validate_currency,
    validate_description,
    validate_uuid,
)


logger = logging.getLogger(__name__)


@dataclass
class CreateSettlementRequest:
    group_id: str
    from_user_id: str
    to_user_id: str
    amount: Decimal
    currency: str = ""
    description: str = ""


@dataclass
class SettlementFilter:
    group_id: Optional[str] = None
    user_id: Optional[str] = None
    from_user_id: Optional[str] = None
    to_user_id: Optional[str] = None
    currency: Optional[str] = None
    date_from: Optional[object] = None
    date_to: Optional[object] = None
    page: int = 1
    limit: Optional[int] = None


@dataclass
class DebtSimplification:
    """Payment suggestions for one group and currency; parties are Participants."""

    group: object
    currency: str
    suggestions: List[PaymentSuggestion] = field(default_factory=list)
    original_transaction_count: int = 0

    @property
    def simplified_transaction_count(self) -> int:
        return len(self.suggestions)

    @property
    def savings(self) -> int:
        return max(0, self.original_transaction_count - self.simplified_transaction_count)

    @property
    def total_amount(self) -> Decimal:
        return sum((s.amount for s in self.suggestions), ZERO)


def _check_debt(available: Decimal, amount: Decimal):
    if amount > available:
        raise InsufficientDebtError(available=available, requested=amount)


def create_settlement(request: CreateSettlementRequest, ledger=None) -> Settlement:
    """
    Record a payment from one member to another and apply it to the ledger.

    Raises:
        ValidationError: malformed input, same participant on both sides, non-member
        NotFoundError: group or user does not exist
        InsufficientDebtError: amount exceeds what the from participant owes
        PersistenceError: the database failed; nothing was written
    """
    ledger = ledger or default_ledger()

    amount = validate_amount(request.amount)
    currency = validate_currency(request.currency)
    description = validate_description(request.description, required=False)

    from_id = validate_uuid(request.from_user_id, "from_user_id")
    to_id = validate_uuid(request.to_user_id, "to_user_id")
    if from_id == to_id:
        raise ValidationError("From user and to user cannot be the same")

    group = resolve_group(request.group_id)
    from_user = resolve_user(from_id, "from_user_id")
    to_user = resolve_user(to_id, "to_user_id")
    require_member(group, from_user, "From user")
    require_member(group, to_user, "To user")

    # fail fast without taking a lock
    _check_debt(ledger.get_balance(group, from_user, currency), amount)

    with storage_errors("creating settlement"), transaction.atomic(), ledger.atomic():
        _check_debt(ledger.get_balance(group, from_user, currency, for_update=True), amount)

        settlement = Settlement.objects.create(
            group=group,
            from_participant=from_user,
            to_participant=to_user,
            amount=amount,
            currency=currency,
            description=description,
        )
        ledger.apply_delta(group, from_user, currency, -amount)
        ledger.apply_delta(group, to_user, currency, amount)

    logger.info(
        "Created settlement %s in group %s: %s %s from %s to %s",
        settlement.uuid, group.uuid, amount, currency, from_user.uuid, to_user.uuid,
    )
    return settlement


def _settlement_queryset():
    return Settlement.objects.select_related(
        "group", "from_participant", "to_participant"
    ).order_by("-created_at", "-id")


def get_settlement(settlement_uuid) -> Settlement:
    value = validate_uuid(settlement_uuid, "settlement_id")
    try:
        return _settlement_queryset().get(uuid=value)
    except Settlement.DoesNotExist:
        raise NotFoundError("Settlement")


def list_settlements(filters: SettlementFilter = None):
    """Filtered, paginated settlements. `user_id` matches either side."""
    filters = filters or SettlementFilter()
    queryset = _settlement_queryset()

    if filters.group_id:
        queryset = queryset.filter(group=resolve_group(filters.group_id))
    if filters.user_id:
        user = resolve_user(filters.user_id)
        queryset = queryset.filter(Q(from_participant=user) | Q(to_participant=user))
    if filters.from_user_id:
        queryset = queryset.filter(from_participant=resolve_user(filters.from_user_id, "from_user_id"))
    if filters.to_user_id:
        queryset = queryset.filter(to_participant=resolve_user(filters.to_user_id, "to_user_id"))
    if filters.currency:
        queryset = queryset.filter(currency=validate_currency(filters.currency))
    if filters.date_from:
        queryset = queryset.filter(created_at__gte=filters.date_from)
    if filters.date_to:
        queryset = queryset.filter(created_at__lte=filters.date_to)

    return paginate(queryset, filters.page, filters.limit)


def get_group_settlements(group_uuid, page=1, limit=None):
    group = resolve_group(group_uuid)
    return paginate(_settlement_queryset().filter(group=group), page, limit)


def get_user_settlements(user_uuid, page=1, limit=None):
    user = resolve_user(user_uuid)
    queryset = _settlement_queryset().filter(Q(from_participant=user) | Q(to_participant=user))
    return paginate(queryset, page, limit)


def simplify_debts(group_uuid, currency=None, ledger=None) -> DebtSimplification:
    """
    Suggest the payments that bring every balance in the group to zero.
    Read-only: nothing is persisted and the ledger is not touched.
    """
    ledger = ledger or default_ledger()
    group = resolve_group(group_uuid)
    currency = validate_currency(currency)

    participants = {}
    balances = []
    for participant, balance in ledger.get_group_balances(group, currency):
        participants[participant.pk] = participant
        balances.append((participant.pk, balance))

    result = simplify_balances(balances)

    return DebtSimplification(
        group=group,
        currency=currency,
        suggestions=[
            PaymentSuggestion(
                from_party=participants[s.from_party],
                to_party=participants[s.to_party],
                amount=s.amount,
            )
            for s in result.suggestions
        ],
        original_transaction_count=result.original_transaction_count,
    )
