"""
Expense Engine

create_expense() is one of the two writers of the balance ledger.

    Received → Validated → Persisted → BalancesApplied → Complete
          ↘ Rejected (nothing persisted)

🔒 BALANCE EFFECT OF ONE EXPENSE:
    each split participant:  +split amount   (owes more)
    payer:                   −expense amount (is owed more)
Σ split amounts == expense amount, so the net delta is always 0.00.

The payer may also appear in the splits; both deltas are applied and the
payer's balance moves by (own share − amount).
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from django.db import transaction
from django.db.models import Q

from ledger.balances import default_ledger
from ledger.errors import NotFoundError, ValidationError
from ledger.models import Expense, ExpenseSplit
from ledger.services.lookups import (
    paginate,
    require_member,
    resolve_group,
    resolve_user,
    storage_errors,
)
from ledger.utils.splits import SPLIT_TYPES, SplitInput, calculate_splits
from ledger.utils.validation import (
    validate_amount,
    validate_currency,
    validate_description,
    validate_uuid,
)


logger = logging.getLogger(__name__)


@dataclass
class ExpenseSplitRequest:
    user_id: str
    amount: Optional[Decimal] = None
    percentage: Optional[Decimal] = None


@dataclass
class CreateExpenseRequest:
    group_id: str
    paid_by: str
    amount: Decimal
    description: str
    split_type: str
    splits: List[ExpenseSplitRequest] = field(default_factory=list)
    currency: str = ""


@dataclass
class ExpenseFilter:
    group_id: Optional[str] = None
    user_id: Optional[str] = None
    currency: Optional[str] = None
    split_type: Optional[str] = None
    date_from: Optional[object] = None
    date_to: Optional[object] = None
    page: int = 1
    limit: Optional[int] = None


def _validate_split_type(split_type) -> str:
    value = (split_type or "").strip().lower()
    if not value:
        raise ValidationError.required("split_type")
    if value not in SPLIT_TYPES:
        raise ValidationError.invalid_value("split_type", split_type)
    return value


def create_expense(request: CreateExpenseRequest, ledger=None) -> Expense:
    """
    Validate, split, persist and apply an expense in one unit of work.

    Raises:
        ValidationError: malformed input, unknown ids, or a non-member payer/participant
        NotFoundError: group or user does not exist
        SplitError / InvalidSplitError: the split does not reconcile with the amount
        PersistenceError: the database failed; nothing was written
    """
    ledger = ledger or default_ledger()

    amount = validate_amount(request.amount)
    description = validate_description(request.description)
    currency = validate_currency(request.currency)
    split_type = _validate_split_type(request.split_type)
    if not request.splits:
        raise ValidationError("At least one split is required")

    group = resolve_group(request.group_id)
    payer = resolve_user(request.paid_by, "paid_by")
    require_member(group, payer, "Payer")

    # membership is checked for every line before any arithmetic
    lines = []
    for split in request.splits:
        participant = resolve_user(split.user_id, "splits.user_id")
        require_member(group, participant, f"User {participant.uuid}")
        lines.append(
            SplitInput(participant=participant, amount=split.amount, percentage=split.percentage)
        )

    shares = calculate_splits(amount, split_type, lines)

    with storage_errors("creating expense"), transaction.atomic(), ledger.atomic():
        expense = Expense.objects.create(
            group=group,
            paid_by=payer,
            amount=amount,
            currency=currency,
            description=description,
            split_type=split_type,
        )
        ExpenseSplit.objects.bulk_create([
            ExpenseSplit(
                expense=expense,
                participant=share.participant,
                amount=share.amount,
                percentage=share.percentage,
            )
            for share in shares
        ])

        for share in shares:
            ledger.apply_delta(group, share.participant, currency, share.amount)
        ledger.apply_delta(group, payer, currency, -amount)

    logger.info(
        "Created expense %s in group %s: %s %s paid by %s, split %s among %d",
        expense.uuid, group.uuid, amount, currency, payer.uuid, split_type, len(shares),
    )
    return expense


def get_expense(expense_uuid) -> Expense:
    value = validate_uuid(expense_uuid, "expense_id")
    try:
        return _expense_queryset().get(uuid=value)
    except Expense.DoesNotExist:
        raise NotFoundError("Expense")


def _expense_queryset():
    return (
        Expense.objects.select_related("group", "paid_by")
        .prefetch_related("splits__participant")
        .order_by("-created_at", "-id")
    )


def list_expenses(filters: ExpenseFilter = None):
    """
    Filtered, paginated expenses. `user_id` matches the payer or any split
    participant.
    """
    filters = filters or ExpenseFilter()
    queryset = _expense_queryset()

    if filters.group_id:
        queryset = queryset.filter(group=resolve_group(filters.group_id))
    if filters.user_id:
        user = resolve_user(filters.user_id)
        matching = Expense.objects.filter(Q(paid_by=user) | Q(splits__participant=user)).values("id")
        queryset = queryset.filter(id__in=matching)
    if filters.currency:
        queryset = queryset.filter(currency=validate_currency(filters.currency))
    if filters.split_type:
        queryset = queryset.filter(split_type=_validate_split_type(filters.split_type))
    if filters.date_from:
        queryset = queryset.filter(created_at__gte=filters.date_from)
    if filters.date_to:
        queryset = queryset.filter(created_at__lte=filters.date_to)

    return paginate(queryset, filters.page, filters.limit)


def get_group_expenses(group_uuid, page=1, limit=None):
    group = resolve_group(group_uuid)
    return paginate(_expense_queryset().filter(group=group), page, limit)


def get_user_expenses(user_uuid, page=1, limit=None):
    """Expenses the user paid for."""
    user = resolve_user(user_uuid)
    return paginate(_expense_queryset().filter(paid_by=user), page, limit)
