"""
Balance Ledger

Stores one signed running balance per (group, participant, currency).

    balance > 0  →  participant owes money into the group
    balance < 0  →  participant is owed money

🔒 For every (group, currency) the balances sum to 0.00 whenever no unit of
work is in progress. Only the expense and settlement services call
apply_delta, always inside `with transaction.atomic(), ledger.atomic():`,
and always with deltas that cancel out.

Two backends:
- DatabaseBalanceLedger: Balance rows, locked with select_for_update()
- InMemoryBalanceLedger: a dict guarded by a lock (tests, dry runs)
"""

import abc
import copy
import functools
import threading
from contextlib import contextmanager
from decimal import Decimal

from django.conf import settings
from django.core.signals import setting_changed
from django.db import transaction
from django.dispatch import receiver
from django.utils.module_loading import import_string

from ledger.models import Balance
from ledger.utils.money import ZERO, round_money


class BalanceLedger(abc.ABC):
    """Interface the expense and settlement services write through."""

    @abc.abstractmethod
    def atomic(self):
        """Context manager; any exception inside rolls this ledger's state back."""

    @abc.abstractmethod
    def apply_delta(self, group, participant, currency: str, amount: Decimal) -> Decimal:
        """Add a signed amount, creating a zero balance first if none exists. Returns the new balance."""

    @abc.abstractmethod
    def get_balance(self, group, participant, currency: str, for_update: bool = False) -> Decimal:
        """Current balance, 0.00 when the participant has no record."""

    @abc.abstractmethod
    def get_group_balances(self, group, currency: str):
        """List of (participant, balance) for every record in the group and currency, zeros included."""

    @abc.abstractmethod
    def get_participant_balances(self, group, participant) -> dict:
        """Mapping currency → balance for one participant in one group."""


class DatabaseBalanceLedger(BalanceLedger):

    def atomic(self):
        return transaction.atomic()

    def apply_delta(self, group, participant, currency, amount):
        # row lock where the backend supports it; SQLite locks the whole
        # database for the transaction instead (transaction_mode IMMEDIATE)
        row, _ = Balance.objects.select_for_update().get_or_create(
            group=group,
            participant=participant,
            currency=currency,
            defaults={"balance": ZERO},
        )
        row.balance = round_money(row.balance + amount)
        row.save(update_fields=["balance", "last_updated"])
        return row.balance

    def get_balance(self, group, participant, currency, for_update=False):
        queryset = Balance.objects.filter(group=group, participant=participant, currency=currency)
        if for_update:
            queryset = queryset.select_for_update()
        row = queryset.first()
        return row.balance if row else ZERO

    def get_group_balances(self, group, currency):
        rows = (
            Balance.objects.filter(group=group, currency=currency)
            .select_related("participant")
            .order_by("participant_id")
        )
        return [(row.participant, row.balance) for row in rows]

    def get_participant_balances(self, group, participant):
        rows = Balance.objects.filter(group=group, participant=participant)
        return {row.currency: row.balance for row in rows}


class InMemoryBalanceLedger(BalanceLedger):
    """
    Dict-backed ledger. Keys are (group, participant, currency) with model
    instances (or any hashable) for group and participant.

    atomic() holds a re-entrant lock for the whole unit of work and restores
    a snapshot when the block raises.
    """

    def __init__(self):
        self._balances = {}
        self._lock = threading.RLock()
        self._depth = 0

    @contextmanager
    def atomic(self):
        with self._lock:
            snapshot = copy.copy(self._balances)
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._balances = snapshot
                raise
            finally:
                self._depth -= 1

    def apply_delta(self, group, participant, currency, amount):
        with self._lock:
            if self._depth == 0:
                raise RuntimeError("apply_delta must run inside ledger.atomic()")
            key = (group, participant, currency)
            self._balances[key] = round_money(self._balances.get(key, ZERO) + amount)
            return self._balances[key]

    def get_balance(self, group, participant, currency, for_update=False):
        with self._lock:
            return self._balances.get((group, participant, currency), ZERO)

    def get_group_balances(self, group, currency):
        with self._lock:
            return [
                (key_participant, balance)
                for (key_group, key_participant, key_currency), balance in self._balances.items()
                if key_group == group and key_currency == currency
            ]

    def get_participant_balances(self, group, participant):
        with self._lock:
            return {
                key_currency: balance
                for (key_group, key_participant, key_currency), balance in self._balances.items()
                if key_group == group and key_participant == participant
            }


@functools.lru_cache(maxsize=None)
def default_ledger() -> BalanceLedger:
    """
    Ledger named by settings.LEDGER_BALANCE_BACKEND (database-backed by default).

    One instance per process, so an in-memory backend keeps its balances
    between service calls. Cleared whenever the setting changes.
    """
    path = getattr(settings, "LEDGER_BALANCE_BACKEND", "ledger.balances.DatabaseBalanceLedger")
    return import_string(path)()


@receiver(setting_changed)
def reset_default_ledger(*, setting, **kwargs):
    if setting == "LEDGER_BALANCE_BACKEND":
        default_ledger.cache_clear()
