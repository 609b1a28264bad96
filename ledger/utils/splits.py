"""
Split Calculator

Turns an expense total and a split strategy into per-participant owed
amounts. Pure functions: participants are opaque (any hashable value), no
database access happens here.

🔒 The returned amounts ALWAYS sum to the total exactly. Rounding drift is
given to one participant, never dropped:

- EQUAL: the last listed participant absorbs the remainder
- PERCENTAGE: the last listed participant with a non-zero percentage absorbs it
- EXACT: no rounding at all, the supplied amounts must already reconcile

Participant order is therefore significant: the same request with the list
reordered can move the odd cent to someone else.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Hashable, List, Optional, Sequence

from ledger.errors import InvalidSplitError, SplitError
from ledger.utils.money import HUNDRED, ZERO, has_at_most_two_places, round_money, to_decimal


SPLIT_EQUAL = "equal"
SPLIT_EXACT = "exact"
SPLIT_PERCENTAGE = "percentage"

SPLIT_TYPES = (SPLIT_EQUAL, SPLIT_EXACT, SPLIT_PERCENTAGE)


@dataclass
class SplitInput:
    """One requested split line. `amount` is used by EXACT, `percentage` by PERCENTAGE."""

    participant: Hashable
    amount: Optional[Decimal] = None
    percentage: Optional[Decimal] = None


@dataclass
class SplitShare:
    participant: Hashable
    amount: Decimal
    percentage: Optional[Decimal] = None


def calculate_splits(total: Decimal, split_type: str, lines: Sequence[SplitInput]) -> List[SplitShare]:
    """
    Compute owed shares for `total` using the given strategy.

    Raises:
        SplitError: empty or duplicated participants, unknown strategy,
            non-positive total, malformed amounts or percentages
        InvalidSplitError: exact amounts or percentages do not reconcile
            with the total
    """
    total = to_decimal(total)
    if total <= 0:
        raise SplitError("Expense amount must be greater than zero")
    if not lines:
        raise SplitError("At least one split is required")

    seen = set()
    for line in lines:
        if line.participant in seen:
            raise SplitError("Each participant may appear only once in a split")
        seen.add(line.participant)

    if split_type == SPLIT_EQUAL:
        return split_equal(total, [line.participant for line in lines])
    if split_type == SPLIT_EXACT:
        return split_exact(total, lines)
    if split_type == SPLIT_PERCENTAGE:
        return split_percentage(total, lines)
    raise SplitError(f"Unknown split type '{split_type}'")


def split_equal(total: Decimal, participants: Sequence[Hashable]) -> List[SplitShare]:
    """
    Divide equally. Everyone but the last gets round(total / N); the last
    gets total minus what was already assigned.

    Examples:
        90.00 / 3  → 30.00, 30.00, 30.00
        100.00 / 3 → 33.33, 33.33, 33.34
        200.00 / 3 → 66.67, 66.67, 66.66
    """
    count = len(participants)
    per_person = round_money(total / count)

    shares = []
    assigned = ZERO
    for index, participant in enumerate(participants):
        if index == count - 1:
            amount = total - assigned
        else:
            amount = per_person
        shares.append(SplitShare(participant=participant, amount=amount))
        assigned += amount

    _reject_negative(shares, total, count)
    return shares


def split_exact(total: Decimal, lines: Sequence[SplitInput]) -> List[SplitShare]:
    shares = []
    split_sum = ZERO
    for line in lines:
        try:
            amount = to_decimal(line.amount)
        except ValueError:
            raise SplitError("Every exact split needs an amount")
        if amount <= 0:
            raise SplitError("Split amounts must be greater than zero")
        if not has_at_most_two_places(amount):
            raise SplitError("Split amounts must have at most 2 decimal places")
        shares.append(SplitShare(participant=line.participant, amount=amount))
        split_sum += amount

    # No rounding leeway: 99.99 against 100.00 is a mismatch.
    if split_sum != total:
        raise InvalidSplitError(
            f"Sum of split amounts ({split_sum}) must equal total expense amount ({total})"
        )
    return shares


def split_percentage(total: Decimal, lines: Sequence[SplitInput]) -> List[SplitShare]:
    percentages = []
    for line in lines:
        try:
            percentage = to_decimal(line.percentage)
        except ValueError:
            raise SplitError("Every percentage split needs a percentage")
        if percentage < 0:
            raise SplitError("Percentage cannot be negative")
        if percentage > HUNDRED:
            raise SplitError("Percentage cannot be greater than 100")
        percentages.append(percentage)

    percentage_sum = sum(percentages, ZERO)
    if percentage_sum != HUNDRED:
        raise InvalidSplitError(f"Percentages must sum to 100, got {percentage_sum}")

    shares = [
        SplitShare(
            participant=line.participant,
            amount=round_money(total * percentage / HUNDRED),
            percentage=percentage,
        )
        for line, percentage in zip(lines, percentages)
    ]

    drift = total - sum((share.amount for share in shares), ZERO)
    if drift:
        absorber = next(share for share in reversed(shares) if share.percentage > 0)
        absorber.amount += drift

    _reject_negative(shares, total, len(shares))
    return shares


def _reject_negative(shares, total, count):
    if any(share.amount < 0 for share in shares):
        raise InvalidSplitError(
            f"Amount {total} is too small to split among {count} participants"
        )
