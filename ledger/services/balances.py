"""
Read side of the balance ledger: single balances, group balance sheets,
per-user breakdowns, pairwise debt relationships, and consistency checks
of the stored balances against the expense and settlement history.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from django.db import transaction
from django.db.models import Count, Max, Q, Sum

from ledger.balances import default_ledger
from ledger.models import Balance, Expense, ExpenseSplit, Settlement
from ledger.services.lookups import require_member, resolve_group, resolve_user
from ledger.utils.money import CENT, ZERO, round_money
from ledger.utils.validation import validate_currency


logger = logging.getLogger(__name__)

RECENT_SETTLEMENTS = 5


@dataclass
class BalanceSheet:
    group: object
    currency: str
    balances: List = field(default_factory=list)

    @property
    def total_positive(self) -> Decimal:
        return sum((b for _, b in self.balances if b > 0), ZERO)

    @property
    def total_negative(self) -> Decimal:
        return sum((b for _, b in self.balances if b < 0), ZERO)

    @property
    def net_balance(self) -> Decimal:
        return self.total_positive + self.total_negative

    @property
    def user_count(self) -> int:
        return len(self.balances)


@dataclass
class UserBalanceDetail:
    group: object
    participant: object
    currency: str
    balance: Decimal
    total_paid: Decimal = ZERO
    total_owed: Decimal = ZERO
    total_settled_out: Decimal = ZERO
    total_settled_in: Decimal = ZERO
    expense_count: int = 0
    payment_count: int = 0
    recent_settlements: List = field(default_factory=list)
    last_activity: Optional[object] = None


@dataclass
class DebtRelationship:
    debtor: object
    creditor: object
    amount: Decimal
    currency: str


def get_balance(group_uuid, user_uuid, currency=None, ledger=None) -> Decimal:
    ledger = ledger or default_ledger()
    group = resolve_group(group_uuid)
    user = resolve_user(user_uuid)
    return ledger.get_balance(group, user, validate_currency(currency))


def get_group_balances(group_uuid, currency=None, ledger=None):
    """(participant, balance) pairs, largest debtor first, ties by participant pk."""
    ledger = ledger or default_ledger()
    group = resolve_group(group_uuid)
    balances = ledger.get_group_balances(group, validate_currency(currency))
    return sorted(balances, key=lambda item: (-item[1], item[0].pk))


def get_balance_sheet(group_uuid, currency=None, ledger=None) -> BalanceSheet:
    currency = validate_currency(currency)
    return BalanceSheet(
        group=resolve_group(group_uuid),
        currency=currency,
        balances=get_group_balances(group_uuid, currency, ledger),
    )


def get_user_balance(group_uuid, user_uuid, currency=None, ledger=None) -> UserBalanceDetail:
    """
    Balance of one member with the totals it is made of:

        balance == total_owed − total_paid − total_settled_out + total_settled_in

    Raises ValidationError when the user is not a member of the group.
    """
    ledger = ledger or default_ledger()
    group = resolve_group(group_uuid)
    user = resolve_user(user_uuid)
    currency = validate_currency(currency)
    require_member(group, user)

    paid = Expense.objects.filter(group=group, paid_by=user, currency=currency).aggregate(total=Sum("amount"))
    owed = ExpenseSplit.objects.filter(
        expense__group=group, expense__currency=currency, participant=user,
    ).aggregate(total=Sum("amount"))
    involved = Expense.objects.filter(
        Q(paid_by=user) | Q(splits__participant=user), group=group, currency=currency,
    ).aggregate(count=Count("id", distinct=True), last=Max("created_at"))

    settlements = Settlement.objects.filter(group=group, currency=currency).filter(
        Q(from_participant=user) | Q(to_participant=user)
    )
    settled_out = settlements.filter(from_participant=user).aggregate(total=Sum("amount"))
    settled_in = settlements.filter(to_participant=user).aggregate(total=Sum("amount"))
    recent = list(
        settlements.select_related("from_participant", "to_participant")
        .order_by("-created_at", "-id")[:RECENT_SETTLEMENTS]
    )

    return UserBalanceDetail(
        group=group,
        participant=user,
        currency=currency,
        balance=ledger.get_balance(group, user, currency),
        total_paid=paid["total"] or ZERO,
        total_owed=owed["total"] or ZERO,
        total_settled_out=settled_out["total"] or ZERO,
        total_settled_in=settled_in["total"] or ZERO,
        expense_count=involved["count"],
        payment_count=settlements.count(),
        recent_settlements=recent,
        last_activity=max(
            (ts for ts in (involved["last"], recent[0].created_at if recent else None) if ts),
            default=None,
        ),
    )


def get_debt_relationships(group_uuid, currency=None, ledger=None) -> List[DebtRelationship]:
    """
    Proportional view of who owes whom: every debtor owes each creditor the
    creditor's share of total credit times the debtor's balance, rounded to
    cents. Amounts of 0.01 or less are left out, so the list need not add up
    exactly; use simplify_debts for payable suggestions.
    """
    currency = validate_currency(currency)
    balances = get_group_balances(group_uuid, currency, ledger)

    debtors = [(p, b) for p, b in balances if b > 0]
    creditors = [(p, -b) for p, b in balances if b < 0]
    total_credit = sum((credit for _, credit in creditors), ZERO)
    if not total_credit:
        return []

    relationships = []
    for debtor, debt in debtors:
        for creditor, credit in creditors:
            amount = round_money(debt * credit / total_credit)
            if amount > CENT:
                relationships.append(
                    DebtRelationship(debtor=debtor, creditor=creditor, amount=amount, currency=currency)
                )
    return relationships


# =========================
# CONSISTENCY CHECKS
# =========================
def zero_sum_violations():
    """
    (group_id, currency, total) for every group and currency whose stored
    balances do not sum to 0.00.

    This and the checks below audit the Balance table, so they only apply
    to DatabaseBalanceLedger; an in-memory ledger has nothing to drift from.
    """
    totals = (
        Balance.objects.values("group_id", "currency")
        .annotate(total=Sum("balance"))
        .order_by("group_id", "currency")
    )
    return [(row["group_id"], row["currency"], row["total"]) for row in totals if row["total"] != 0]


def expected_balances() -> dict:
    """
    Balances recomputed from the immutable history, keyed by
    (group_id, participant_id, currency).
    """
    expected = defaultdict(lambda: ZERO)

    for row in ExpenseSplit.objects.values(
        "expense__group", "participant_id", "expense__currency"
    ).annotate(total=Sum("amount")):
        expected[(row["expense__group"], row["participant_id"], row["expense__currency"])] += row["total"]

    for row in Expense.objects.values("group_id", "paid_by_id", "currency").annotate(total=Sum("amount")):
        expected[(row["group_id"], row["paid_by_id"], row["currency"])] -= row["total"]

    for row in Settlement.objects.values("group_id", "from_participant_id", "currency").annotate(total=Sum("amount")):
        expected[(row["group_id"], row["from_participant_id"], row["currency"])] -= row["total"]

    for row in Settlement.objects.values("group_id", "to_participant_id", "currency").annotate(total=Sum("amount")):
        expected[(row["group_id"], row["to_participant_id"], row["currency"])] += row["total"]

    return {key: round_money(amount) for key, amount in expected.items()}


def balance_drift():
    """
    (key, stored, expected) for every balance that differs from the history.
    Missing rows count as 0.00 on either side.
    """
    expected = expected_balances()
    stored = {
        (row.group_id, row.participant_id, row.currency): row.balance
        for row in Balance.objects.all()
    }
    drift = []
    for key in sorted(set(expected) | set(stored)):
        stored_amount = stored.get(key, ZERO)
        expected_amount = expected.get(key, ZERO)
        if stored_amount != expected_amount:
            drift.append((key, stored_amount, expected_amount))
    return drift


def rebuild_balances() -> int:
    """Overwrite drifted balances with the recomputed values. Returns rows changed."""
    with transaction.atomic():
        drift = balance_drift()
        for (group_id, participant_id, currency), _, expected in drift:
            Balance.objects.update_or_create(
                group_id=group_id,
                participant_id=participant_id,
                currency=currency,
                defaults={"balance": expected},
            )
    if drift:
        logger.warning("Rebuilt %d drifted balance(s)", len(drift))
    return len(drift)
