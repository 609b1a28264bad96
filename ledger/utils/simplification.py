"""
Debt simplification (greedy largest-debtor vs largest-creditor matching).

Input is a snapshot of signed balances for one group and one currency:
positive = owes money into the group, negative = is owed money. Output is a
list of payment suggestions that brings every balance to zero.

Tie-break: when two debtors (or two creditors) have the same remaining
amount, the one with the lowest key is picked. Keys are whatever the caller
passes (the services use participant primary keys), so results are
reproducible for the same input.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Hashable, Iterable, List, Tuple

from ledger.utils.money import ZERO


@dataclass
class PaymentSuggestion:
    from_party: Hashable
    to_party: Hashable
    amount: Decimal


@dataclass
class SimplificationResult:
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


def partition_balances(balances: Iterable[Tuple[Hashable, Decimal]]):
    """
    Split signed balances into (debtors, creditors) dicts of key → positive
    remaining amount. Zero balances are left out of both.
    """
    debtors = {}
    creditors = {}
    for party, amount in balances:
        if amount > 0:
            debtors[party] = debtors.get(party, ZERO) + amount
        elif amount < 0:
            creditors[party] = creditors.get(party, ZERO) + (-amount)
    return debtors, creditors


def _largest(remaining: dict):
    # max amount first, then lowest key
    return min(remaining, key=lambda party: (-remaining[party], party))


def simplify_balances(balances: Iterable[Tuple[Hashable, Decimal]]) -> SimplificationResult:
    """
    Greedy matching:
    1. pick the largest debtor and the largest creditor
    2. move min(debt, credit) from debtor to creditor
    3. drop whoever reaches exactly zero, repeat until one side is empty

    With zero-sum input both sides empty together, and the suggested amounts
    add up to the total debt.
    """
    debtors, creditors = partition_balances(balances)
    result = SimplificationResult(original_transaction_count=len(debtors) * len(creditors))

    while debtors and creditors:
        debtor = _largest(debtors)
        creditor = _largest(creditors)

        amount = min(debtors[debtor], creditors[creditor])
        result.suggestions.append(
            PaymentSuggestion(from_party=debtor, to_party=creditor, amount=amount)
        )

        debtors[debtor] -= amount
        creditors[creditor] -= amount
        if debtors[debtor] == 0:
            del debtors[debtor]
        if creditors[creditor] == 0:
            del creditors[creditor]

    return result
