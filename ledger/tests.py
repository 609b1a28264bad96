import json
import threading
import uuid
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import DatabaseError, connections
from django.test import (
    SimpleTestCase, TestCase, TransactionTestCase, Client as TestClient, RequestFactory, override_settings,
)
from django.urls import reverse
from django.utils import timezone

from .balances import DatabaseBalanceLedger, InMemoryBalanceLedger, default_ledger
from .errors import (
    AlreadyExistsError, ErrorKind, InsufficientDebtError, InvalidSplitError,
    LedgerError, NotFoundError, PersistenceError, SplitError, ValidationError,
)
from .idempotency import IN_PROGRESS, request_fingerprint, reserve_key
from .models import Balance, Expense, ExpenseSplit, IdempotencyRecord, Settlement
from .services import balances, expenses, groups, settlements, users
from .services.expenses import CreateExpenseRequest, ExpenseFilter, ExpenseSplitRequest
from .services.settlements import CreateSettlementRequest, SettlementFilter
from .utils.money import format_money, round_money, sum_money, to_decimal
from .utils.simplification import simplify_balances
from .utils.splits import SplitInput, calculate_splits
from .utils.validation import (
    normalize_page, validate_amount, validate_currency, validate_date,
    validate_description, validate_email, validate_name, validate_uuid,
)


def amounts(shares):
    return [share.amount for share in shares]


class LedgerFixtureMixin:
    """Alice, Bob and Carol in one group; Dave exists but is not a member."""

    def setUp(self):
        self.alice = users.create_user("Alice", "alice@example.com")
        self.bob = users.create_user("Bob", "bob@example.com")
        self.carol = users.create_user("Carol", "carol@example.com")
        self.dave = users.create_user("Dave", "dave@example.com")
        self.group = groups.create_group("Weekend Trip", "Cabin and food", self.alice.uuid)
        groups.add_member(self.group.uuid, self.bob.uuid)
        groups.add_member(self.group.uuid, self.carol.uuid)

    def add_expense(self, payer, amount, participants, split_type="equal", currency="", ledger=None,
                    split_amounts=None, percentages=None, description="Dinner"):
        lines = []
        for index, participant in enumerate(participants):
            lines.append(ExpenseSplitRequest(
                user_id=str(participant.uuid),
                amount=split_amounts[index] if split_amounts else None,
                percentage=percentages[index] if percentages else None,
            ))
        return expenses.create_expense(
            CreateExpenseRequest(
                group_id=str(self.group.uuid),
                paid_by=str(payer.uuid),
                amount=amount,
                description=description,
                split_type=split_type,
                splits=lines,
                currency=currency,
            ),
            ledger=ledger,
        )

    def settle(self, payer, receiver, amount, currency="", ledger=None):
        return settlements.create_settlement(
            CreateSettlementRequest(
                group_id=str(self.group.uuid),
                from_user_id=str(payer.uuid),
                to_user_id=str(receiver.uuid),
                amount=amount,
                currency=currency,
            ),
            ledger=ledger,
        )

    def balance_of(self, participant, currency="USD"):
        return balances.get_balance(self.group.uuid, participant.uuid, currency)

    def assertZeroSum(self, currency="USD"):
        total = sum((b for _, b in balances.get_group_balances(self.group.uuid, currency)), Decimal("0"))
        self.assertEqual(total, Decimal("0.00"))


# ============================================================================
# MONEY & VALIDATION
# ============================================================================

class MoneyUtilsTest(SimpleTestCase):
    """Decimal conversion and ROUND_HALF_UP rounding."""

    def test_round_half_up(self):
        """Halves round away from zero."""
        self.assertEqual(round_money(Decimal("66.665")), Decimal("66.67"))
        self.assertEqual(round_money(Decimal("33.333")), Decimal("33.33"))
        self.assertEqual(round_money(Decimal("0.005")), Decimal("0.01"))
        self.assertEqual(round_money(None), Decimal("0.00"))

    def test_to_decimal_goes_through_str(self):
        """Floats are converted through str, not their binary value."""
        self.assertEqual(to_decimal(0.1), Decimal("0.1"))
        self.assertEqual(to_decimal("12.50"), Decimal("12.50"))

    def test_to_decimal_rejects_garbage(self):
        for value in (None, "abc", "NaN", "Infinity"):
            with self.assertRaises(ValueError):
                to_decimal(value)

    def test_sum_and_format(self):
        self.assertEqual(sum_money([]), Decimal("0.00"))
        self.assertEqual(sum_money([Decimal("0.10"), Decimal("0.20")]), Decimal("0.30"))
        self.assertEqual(format_money(Decimal("5")), "5.00")


class ValidationUtilsTest(SimpleTestCase):

    def test_currency_defaults_and_normalizes(self):
        self.assertEqual(validate_currency(""), "USD")
        self.assertEqual(validate_currency(None), "USD")
        self.assertEqual(validate_currency(" eur "), "EUR")

    def test_unsupported_currency(self):
        with self.assertRaises(ValidationError):
            validate_currency("XYZ")

    @override_settings(LEDGER_DEFAULT_CURRENCY="EUR")
    def test_default_currency_from_settings(self):
        self.assertEqual(validate_currency(""), "EUR")

    def test_amount_bounds(self):
        self.assertEqual(validate_amount("10.50"), Decimal("10.50"))
        self.assertEqual(validate_amount("999999999.99"), Decimal("999999999.99"))
        for bad in ("0", "-1.00", "1000000000.00", "10.005"):
            with self.assertRaises(ValidationError):
                validate_amount(bad)

    def test_amount_messages(self):
        with self.assertRaises(ValidationError) as ctx:
            validate_amount(None)
        self.assertEqual(ctx.exception.message, "Field 'amount' is required")
        with self.assertRaises(ValidationError) as ctx:
            validate_amount("abc")
        self.assertEqual(ctx.exception.message, "Invalid value 'abc' for field 'amount'")

    def test_description(self):
        self.assertEqual(validate_description("  Lunch  "), "Lunch")
        self.assertEqual(validate_description("", required=False), "")
        with self.assertRaises(ValidationError):
            validate_description("   ")
        with self.assertRaises(ValidationError):
            validate_description("x" * 1001)

    def test_name_and_email(self):
        self.assertEqual(validate_name(" Al "), "Al")
        with self.assertRaises(ValidationError):
            validate_name("A")
        self.assertEqual(validate_email("Alice@Example.COM"), "alice@example.com")
        with self.assertRaises(ValidationError):
            validate_email("not-an-email")

    def test_uuid(self):
        value = uuid.uuid4()
        self.assertEqual(validate_uuid(str(value).upper(), "id"), str(value))
        self.assertEqual(validate_uuid(value, "id"), str(value))
        with self.assertRaises(ValidationError):
            validate_uuid("123", "id")
        with self.assertRaises(ValidationError):
            validate_uuid("", "id")

    def test_pagination_clamping(self):
        self.assertEqual(normalize_page(0, 500), (1, 10))
        self.assertEqual(normalize_page("3", "25"), (3, 25))
        self.assertEqual(normalize_page("x", None), (1, 10))

    def test_dates(self):
        self.assertIsNone(validate_date("", "date_from"))
        parsed = validate_date("2024-03-01", "date_from")
        self.assertEqual((parsed.year, parsed.month, parsed.day), (2024, 3, 1))
        self.assertTrue(timezone.is_aware(parsed))
        with self.assertRaises(ValidationError):
            validate_date("yesterday", "date_from")


class ErrorKindTest(SimpleTestCase):

    def test_codes_and_statuses(self):
        self.assertEqual(NotFoundError("Group").status, 404)
        self.assertEqual(NotFoundError("Group").message, "Group not found")
        self.assertEqual(InvalidSplitError("x").kind, ErrorKind.INVALID_SPLIT)
        self.assertTrue(issubclass(InvalidSplitError, SplitError))
        self.assertEqual(AlreadyExistsError("User").status, 409)
        self.assertEqual(PersistenceError().code, "PERSISTENCE_ERROR")

    def test_insufficient_debt_carries_amounts(self):
        error = InsufficientDebtError(Decimal("20.00"), Decimal("50.00"))
        self.assertEqual(error.available, Decimal("20.00"))
        self.assertEqual(error.requested, Decimal("50.00"))
        self.assertEqual(error.code, "INSUFFICIENT_DEBT")
        self.assertEqual(error.status, 400)

    def test_persistence_error_hides_cause(self):
        error = PersistenceError(cause=DatabaseError("disk I/O error at /var/db"))
        self.assertEqual(error.message, "Database operation failed")
        self.assertNotIn("/var/db", str(error))


# ============================================================================
# SPLIT CALCULATOR
# ============================================================================

class SplitCalculatorTest(SimpleTestCase):

    def test_equal_even(self):
        shares = calculate_splits(Decimal("90.00"), "equal", [SplitInput(p) for p in "abc"])
        self.assertEqual(amounts(shares), [Decimal("30.00")] * 3)

    def test_equal_last_absorbs_remainder(self):
        """The last participant gets the odd cent."""
        shares = calculate_splits(Decimal("100.00"), "equal", [SplitInput(p) for p in "abc"])
        self.assertEqual(amounts(shares), [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")])

    def test_equal_rounding_up_leaves_last_short(self):
        shares = calculate_splits(Decimal("200.00"), "equal", [SplitInput(p) for p in "abc"])
        self.assertEqual(amounts(shares), [Decimal("66.67"), Decimal("66.67"), Decimal("66.66")])
        self.assertEqual(sum(amounts(shares)), Decimal("200.00"))

    def test_equal_order_is_significant(self):
        shares = calculate_splits(Decimal("100.00"), "equal", [SplitInput(p) for p in "cab"])
        self.assertEqual(shares[-1].participant, "b")
        self.assertEqual(shares[-1].amount, Decimal("33.34"))

    def test_equal_total_too_small(self):
        """0.05 over 10 people would leave the last one negative."""
        with self.assertRaises(InvalidSplitError):
            calculate_splits(Decimal("0.05"), "equal", [SplitInput(i) for i in range(10)])

    def test_exact_matching_total(self):
        shares = calculate_splits(
            Decimal("100.00"), "exact",
            [SplitInput("a", amount=Decimal("60.00")), SplitInput("b", amount="40.00")],
        )
        self.assertEqual(amounts(shares), [Decimal("60.00"), Decimal("40.00")])

    def test_exact_mismatch(self):
        with self.assertRaises(InvalidSplitError):
            calculate_splits(
                Decimal("100.00"), "exact",
                [SplitInput("a", amount=Decimal("50.00")), SplitInput("b", amount=Decimal("30.00"))],
            )

    def test_exact_has_no_tolerance(self):
        with self.assertRaises(InvalidSplitError):
            calculate_splits(
                Decimal("100.00"), "exact",
                [SplitInput("a", amount=Decimal("50.00")), SplitInput("b", amount=Decimal("49.99"))],
            )

    def test_exact_rejects_bad_lines(self):
        for line in (SplitInput("a"), SplitInput("a", amount=Decimal("0")), SplitInput("a", amount=Decimal("1.005"))):
            with self.assertRaises(SplitError):
                calculate_splits(Decimal("100.00"), "exact", [line])

    def test_percentage(self):
        shares = calculate_splits(
            Decimal("200.00"), "percentage",
            [SplitInput("a", percentage=Decimal("60")), SplitInput("b", percentage=Decimal("40"))],
        )
        self.assertEqual(amounts(shares), [Decimal("120.00"), Decimal("80.00")])
        self.assertEqual(shares[0].percentage, Decimal("60"))

    def test_percentage_must_sum_to_hundred(self):
        for pcts in (("50", "49"), ("50", "51")):
            with self.assertRaises(InvalidSplitError):
                calculate_splits(
                    Decimal("100.00"), "percentage",
                    [SplitInput("a", percentage=pcts[0]), SplitInput("b", percentage=pcts[1])],
                )

    def test_percentage_out_of_range(self):
        with self.assertRaises(SplitError):
            calculate_splits(
                Decimal("100.00"), "percentage",
                [SplitInput("a", percentage="150"), SplitInput("b", percentage="-50")],
            )

    def test_percentage_rounding_drift_goes_to_last(self):
        shares = calculate_splits(
            Decimal("10.00"), "percentage",
            [SplitInput("a", percentage="33.33"), SplitInput("b", percentage="33.33"),
             SplitInput("c", percentage="33.34")],
        )
        self.assertEqual(amounts(shares), [Decimal("3.33"), Decimal("3.33"), Decimal("3.34")])

    def test_percentage_drift_skips_zero_percentage(self):
        shares = calculate_splits(
            Decimal("1.00"), "percentage",
            [SplitInput("a", percentage="50.5"), SplitInput("b", percentage="49.5"),
             SplitInput("c", percentage="0")],
        )
        self.assertEqual(amounts(shares), [Decimal("0.51"), Decimal("0.49"), Decimal("0.00")])

    def test_preconditions(self):
        with self.assertRaises(SplitError):
            calculate_splits(Decimal("0"), "equal", [SplitInput("a")])
        with self.assertRaises(SplitError):
            calculate_splits(Decimal("10.00"), "equal", [])
        with self.assertRaises(SplitError):
            calculate_splits(Decimal("10.00"), "equal", [SplitInput("a"), SplitInput("a")])
        with self.assertRaises(SplitError):
            calculate_splits(Decimal("10.00"), "shares", [SplitInput("a")])


# ============================================================================
# DEBT SIMPLIFICATION (PURE)
# ============================================================================

class SimplificationTest(SimpleTestCase):

    def test_one_debtor_two_creditors(self):
        result = simplify_balances([
            ("alice", Decimal("50.00")), ("bob", Decimal("-30.00")), ("carol", Decimal("-20.00")),
        ])
        self.assertEqual(
            [(s.from_party, s.to_party, s.amount) for s in result.suggestions],
            [("alice", "bob", Decimal("30.00")), ("alice", "carol", Decimal("20.00"))],
        )
        self.assertEqual(result.total_amount, Decimal("50.00"))
        self.assertEqual(result.original_transaction_count, 2)
        self.assertEqual(result.simplified_transaction_count, 2)
        self.assertEqual(result.savings, 0)

    def test_ties_pick_lowest_key(self):
        result = simplify_balances([
            ("b", Decimal("10.00")), ("a", Decimal("10.00")),
            ("d", Decimal("-10.00")), ("c", Decimal("-10.00")),
        ])
        self.assertEqual(
            [(s.from_party, s.to_party) for s in result.suggestions],
            [("a", "c"), ("b", "d")],
        )

    def test_savings(self):
        result = simplify_balances([
            (1, Decimal("40.00")), (2, Decimal("10.00")), (3, Decimal("-30.00")), (4, Decimal("-20.00")),
        ])
        self.assertEqual(
            [(s.from_party, s.to_party, s.amount) for s in result.suggestions],
            [(1, 3, Decimal("30.00")), (1, 4, Decimal("10.00")), (2, 4, Decimal("10.00"))],
        )
        self.assertEqual(result.original_transaction_count, 4)
        self.assertEqual(result.savings, 1)

    def test_all_settled(self):
        result = simplify_balances([(1, Decimal("0.00")), (2, Decimal("0.00"))])
        self.assertEqual(result.suggestions, [])
        self.assertEqual(result.original_transaction_count, 0)
        self.assertEqual(result.savings, 0)

    def test_same_input_same_output(self):
        data = [(3, Decimal("12.34")), (1, Decimal("-5.00")), (2, Decimal("-7.34"))]
        self.assertEqual(simplify_balances(data), simplify_balances(list(reversed(data))))


# ============================================================================
# BALANCE LEDGER
# ============================================================================

class InMemoryLedgerTest(SimpleTestCase):

    def test_apply_and_read(self):
        ledger = InMemoryBalanceLedger()
        with ledger.atomic():
            ledger.apply_delta("g", "alice", "USD", Decimal("10.00"))
            ledger.apply_delta("g", "bob", "USD", Decimal("-10.00"))
            ledger.apply_delta("g", "carol", "USD", Decimal("0.00"))
        self.assertEqual(ledger.get_balance("g", "alice", "USD"), Decimal("10.00"))
        self.assertEqual(ledger.get_balance("g", "nobody", "USD"), Decimal("0.00"))
        self.assertEqual(len(ledger.get_group_balances("g", "USD")), 3)
        self.assertEqual(ledger.get_group_balances("g", "EUR"), [])
        self.assertEqual(ledger.get_participant_balances("g", "bob"), {"USD": Decimal("-10.00")})

    def test_rollback_on_error(self):
        ledger = InMemoryBalanceLedger()
        with ledger.atomic():
            ledger.apply_delta("g", "alice", "USD", Decimal("5.00"))
            ledger.apply_delta("g", "bob", "USD", Decimal("-5.00"))
        with self.assertRaises(KeyError):
            with ledger.atomic():
                ledger.apply_delta("g", "alice", "USD", Decimal("100.00"))
                raise KeyError("boom")
        self.assertEqual(ledger.get_balance("g", "alice", "USD"), Decimal("5.00"))

    def test_apply_outside_unit_of_work(self):
        with self.assertRaises(RuntimeError):
            InMemoryBalanceLedger().apply_delta("g", "alice", "USD", Decimal("1.00"))


class DatabaseLedgerTest(LedgerFixtureMixin, TestCase):

    def test_default_ledger_is_database_backed(self):
        self.assertIsInstance(default_ledger(), DatabaseBalanceLedger)

    @override_settings(LEDGER_BALANCE_BACKEND="ledger.balances.InMemoryBalanceLedger")
    def test_default_ledger_from_settings(self):
        self.assertIsInstance(default_ledger(), InMemoryBalanceLedger)
        self.assertIs(default_ledger(), default_ledger())

    @override_settings(LEDGER_BALANCE_BACKEND="ledger.balances.InMemoryBalanceLedger")
    def test_configured_in_memory_backend_keeps_balances(self):
        """Services called without ledger= share the configured in-memory ledger."""
        self.add_expense(self.alice, "40.00", [self.alice, self.bob])
        self.assertEqual(self.balance_of(self.bob), Decimal("20.00"))

        self.settle(self.bob, self.alice, "15.00")
        self.assertEqual(self.balance_of(self.bob), Decimal("5.00"))
        self.assertEqual(self.balance_of(self.alice), Decimal("-5.00"))
        self.assertEqual(settlements.simplify_debts(self.group.uuid).total_amount, Decimal("5.00"))
        self.assertFalse(Balance.objects.exists())

    def test_setting_change_replaces_cached_ledger(self):
        database_ledger = default_ledger()
        with override_settings(LEDGER_BALANCE_BACKEND="ledger.balances.InMemoryBalanceLedger"):
            self.assertIsInstance(default_ledger(), InMemoryBalanceLedger)
        self.assertIsInstance(default_ledger(), DatabaseBalanceLedger)
        self.assertIsNot(default_ledger(), database_ledger)

    def test_rows_created_on_first_use(self):
        ledger = DatabaseBalanceLedger()
        self.assertEqual(ledger.get_balance(self.group, self.bob, "USD"), Decimal("0.00"))
        with ledger.atomic():
            ledger.apply_delta(self.group, self.bob, "USD", Decimal("12.50"))
            ledger.apply_delta(self.group, self.alice, "USD", Decimal("-12.50"))
            ledger.apply_delta(self.group, self.bob, "USD", Decimal("2.50"))
            ledger.apply_delta(self.group, self.alice, "USD", Decimal("-2.50"))
        self.assertEqual(ledger.get_balance(self.group, self.bob, "USD"), Decimal("15.00"))
        self.assertEqual(Balance.objects.filter(group=self.group).count(), 2)

    def test_zero_rows_are_kept(self):
        ledger = DatabaseBalanceLedger()
        with ledger.atomic():
            ledger.apply_delta(self.group, self.bob, "USD", Decimal("5.00"))
            ledger.apply_delta(self.group, self.bob, "USD", Decimal("-5.00"))
        self.assertEqual(ledger.get_group_balances(self.group, "USD"), [(self.bob, Decimal("0.00"))])


# ============================================================================
# EXPENSE ENGINE
# ============================================================================

class ExpenseEngineTest(LedgerFixtureMixin, TestCase):

    def test_equal_expense_moves_balances(self):
        """Alice pays 90.00 for three: she is owed 60.00, Bob and Carol owe 30.00."""
        expense = self.add_expense(self.alice, "90.00", [self.alice, self.bob, self.carol])

        self.assertEqual(expense.amount, Decimal("90.00"))
        self.assertEqual(expense.currency, "USD")
        self.assertEqual(expense.split_total, Decimal("90.00"))
        self.assertEqual(self.balance_of(self.alice), Decimal("-60.00"))
        self.assertEqual(self.balance_of(self.bob), Decimal("30.00"))
        self.assertEqual(self.balance_of(self.carol), Decimal("30.00"))
        self.assertZeroSum()

    def test_payer_outside_splits(self):
        self.add_expense(self.alice, "100.00", [self.bob, self.carol], split_type="exact",
                         split_amounts=["70.00", "30.00"])
        self.assertEqual(self.balance_of(self.alice), Decimal("-100.00"))
        self.assertEqual(self.balance_of(self.bob), Decimal("70.00"))
        self.assertZeroSum()

    def test_percentage_expense_stores_percentages(self):
        expense = self.add_expense(self.bob, "200.00", [self.alice, self.bob], split_type="percentage",
                                   percentages=[Decimal("60"), Decimal("40")])
        splits = {s.participant_id: s for s in expense.splits.all()}
        self.assertEqual(splits[self.alice.id].amount, Decimal("120.00"))
        self.assertEqual(splits[self.alice.id].percentage, Decimal("60.00"))
        self.assertEqual(self.balance_of(self.bob), Decimal("-120.00"))
        self.assertZeroSum()

    def test_zero_sum_across_many_expenses(self):
        self.add_expense(self.alice, "100.00", [self.alice, self.bob, self.carol])
        self.add_expense(self.bob, "200.00", [self.alice, self.bob, self.carol])
        self.add_expense(self.carol, "0.07", [self.alice, self.bob, self.carol])
        self.add_expense(self.carol, "55.55", [self.alice, self.bob], currency="EUR")
        self.assertZeroSum("USD")
        self.assertZeroSum("EUR")
        self.assertEqual(self.balance_of(self.carol, "EUR"), Decimal("-55.55"))

    def test_non_member_payer(self):
        with self.assertRaises(ValidationError) as ctx:
            self.add_expense(self.dave, "10.00", [self.alice])
        self.assertEqual(ctx.exception.message, "Payer is not a member of the group")
        self.assertEqual(Expense.objects.count(), 0)

    def test_non_member_participant(self):
        with self.assertRaises(ValidationError):
            self.add_expense(self.alice, "10.00", [self.alice, self.dave])
        self.assertEqual(Expense.objects.count(), 0)
        self.assertFalse(Balance.objects.exists())

    def test_invalid_split_rejected_before_persisting(self):
        with self.assertRaises(InvalidSplitError):
            self.add_expense(self.alice, "100.00", [self.alice, self.bob], split_type="exact",
                             split_amounts=["50.00", "30.00"])
        self.assertEqual(Expense.objects.count(), 0)
        self.assertFalse(Balance.objects.exists())

    def test_input_validation(self):
        with self.assertRaises(ValidationError):
            self.add_expense(self.alice, "0", [self.alice])
        with self.assertRaises(ValidationError):
            self.add_expense(self.alice, "10.00", [self.alice], description="   ")
        with self.assertRaises(ValidationError):
            self.add_expense(self.alice, "10.00", [self.alice], currency="ZZZ")
        with self.assertRaises(ValidationError):
            self.add_expense(self.alice, "10.00", [self.alice], split_type="shares")
        with self.assertRaises(ValidationError):
            self.add_expense(self.alice, "10.00", [])

    def test_unknown_group(self):
        request = CreateExpenseRequest(
            group_id=str(uuid.uuid4()), paid_by=str(self.alice.uuid), amount="10.00",
            description="Taxi", split_type="equal", splits=[ExpenseSplitRequest(str(self.alice.uuid))],
        )
        with self.assertRaises(NotFoundError):
            expenses.create_expense(request)

    def test_storage_failure_rolls_back_everything(self):
        """A failure while applying balances leaves no expense, splits or balances behind."""

        class FailingLedger(DatabaseBalanceLedger):
            calls = 0

            def apply_delta(self, *args, **kwargs):
                FailingLedger.calls += 1
                if FailingLedger.calls == 3:
                    raise DatabaseError("disk full")
                return super().apply_delta(*args, **kwargs)

        with self.assertRaises(PersistenceError):
            self.add_expense(self.alice, "90.00", [self.alice, self.bob, self.carol], ledger=FailingLedger())

        self.assertEqual(Expense.objects.count(), 0)
        self.assertEqual(ExpenseSplit.objects.count(), 0)
        self.assertFalse(Balance.objects.exists())

    def test_in_memory_ledger_rolls_back_with_database(self):

        class FailingMemoryLedger(InMemoryBalanceLedger):
            def apply_delta(self, group, participant, currency, amount):
                if amount < 0:
                    raise DatabaseError("lost connection")
                return super().apply_delta(group, participant, currency, amount)

        ledger = FailingMemoryLedger()
        with self.assertRaises(PersistenceError):
            self.add_expense(self.alice, "30.00", [self.bob, self.carol], ledger=ledger)
        self.assertEqual(ledger.get_group_balances(self.group, "USD"), [])
        self.assertEqual(Expense.objects.count(), 0)

    def test_in_memory_ledger(self):
        ledger = InMemoryBalanceLedger()
        self.add_expense(self.alice, "90.00", [self.alice, self.bob, self.carol], ledger=ledger)
        self.assertEqual(ledger.get_balance(self.group, self.bob, "USD"), Decimal("30.00"))
        self.assertEqual(sum(b for _, b in ledger.get_group_balances(self.group, "USD")), Decimal("0.00"))
        self.assertFalse(Balance.objects.exists())


class ExpenseReadTest(LedgerFixtureMixin, TestCase):

    def setUp(self):
        super().setUp()
        self.dinner = self.add_expense(self.alice, "90.00", [self.alice, self.bob, self.carol])
        self.taxi = self.add_expense(self.carol, "20.00", [self.carol, self.alice], currency="EUR",
                                     description="Taxi")

    def test_get_expense(self):
        expense = expenses.get_expense(str(self.dinner.uuid))
        self.assertEqual(expense.description, "Dinner")
        self.assertEqual(len(expense.splits.all()), 3)
        with self.assertRaises(NotFoundError):
            expenses.get_expense(str(uuid.uuid4()))

    def test_filter_by_participant(self):
        page = expenses.list_expenses(ExpenseFilter(user_id=str(self.bob.uuid)))
        self.assertEqual([e.uuid for e in page.items], [self.dinner.uuid])
        self.assertEqual(page.total_count, 1)

    def test_filter_by_currency_and_type(self):
        page = expenses.list_expenses(ExpenseFilter(currency="eur"))
        self.assertEqual([e.uuid for e in page.items], [self.taxi.uuid])
        page = expenses.list_expenses(ExpenseFilter(split_type="exact"))
        self.assertEqual(page.items, [])

    def test_pagination(self):
        page = expenses.get_group_expenses(self.group.uuid, page=2, limit=1)
        self.assertEqual(page.total_count, 2)
        self.assertEqual(page.total_pages, 2)
        self.assertEqual(len(page.items), 1)

    def test_user_expenses_are_paid_by_user(self):
        page = expenses.get_user_expenses(self.carol.uuid)
        self.assertEqual([e.uuid for e in page.items], [self.taxi.uuid])


# ============================================================================
# SETTLEMENT ENGINE
# ============================================================================

class SettlementEngineTest(LedgerFixtureMixin, TestCase):

    def setUp(self):
        super().setUp()
        # Bob owes Alice 20.00
        self.add_expense(self.alice, "40.00", [self.alice, self.bob])

    def test_settlement_larger_than_debt(self):
        with self.assertRaises(InsufficientDebtError) as ctx:
            self.settle(self.bob, self.alice, "50.00")
        self.assertEqual(ctx.exception.available, Decimal("20.00"))
        self.assertEqual(ctx.exception.requested, Decimal("50.00"))
        self.assertEqual(Settlement.objects.count(), 0)

    def test_full_settlement_clears_balances(self):
        settlement = self.settle(self.bob, self.alice, "20.00")
        self.assertEqual(settlement.amount, Decimal("20.00"))
        self.assertEqual(self.balance_of(self.bob), Decimal("0.00"))
        self.assertEqual(self.balance_of(self.alice), Decimal("0.00"))
        self.assertZeroSum()

    def test_partial_settlement(self):
        self.settle(self.bob, self.alice, "5.00")
        self.assertEqual(self.balance_of(self.bob), Decimal("15.00"))
        self.assertEqual(self.balance_of(self.alice), Decimal("-15.00"))

    def test_paying_a_third_member(self):
        """A debtor may pay any member; the receiver's balance rises."""
        self.settle(self.bob, self.carol, "20.00")
        self.assertEqual(self.balance_of(self.bob), Decimal("0.00"))
        self.assertEqual(self.balance_of(self.carol), Decimal("20.00"))
        self.assertZeroSum()

    def test_creditor_cannot_settle(self):
        with self.assertRaises(InsufficientDebtError):
            self.settle(self.alice, self.bob, "5.00")

    def test_zero_balance_cannot_settle(self):
        with self.assertRaises(InsufficientDebtError):
            self.settle(self.carol, self.alice, "0.01")

    def test_same_participant(self):
        with self.assertRaises(ValidationError):
            self.settle(self.bob, self.bob, "5.00")

    def test_non_member(self):
        with self.assertRaises(ValidationError):
            self.settle(self.bob, self.dave, "5.00")

    def test_other_currency_has_no_debt(self):
        with self.assertRaises(InsufficientDebtError):
            self.settle(self.bob, self.alice, "5.00", currency="EUR")

    def test_in_memory_ledger(self):
        ledger = InMemoryBalanceLedger()
        self.add_expense(self.alice, "40.00", [self.alice, self.bob], ledger=ledger)
        self.settle(self.bob, self.alice, "20.00", ledger=ledger)
        self.assertEqual(ledger.get_balance(self.group, self.bob, "USD"), Decimal("0.00"))

    def test_settlement_model_clean(self):
        settlement = Settlement(
            group=self.group, from_participant=self.bob, to_participant=self.bob, amount=Decimal("1.00"),
        )
        with self.assertRaises(DjangoValidationError):
            settlement.clean()

    def test_reads(self):
        first = self.settle(self.bob, self.alice, "5.00")
        self.assertEqual(settlements.get_settlement(str(first.uuid)).pk, first.pk)
        page = settlements.list_settlements(SettlementFilter(user_id=str(self.alice.uuid)))
        self.assertEqual(page.total_count, 1)
        page = settlements.list_settlements(SettlementFilter(from_user_id=str(self.alice.uuid)))
        self.assertEqual(page.total_count, 0)
        self.assertEqual(settlements.get_group_settlements(self.group.uuid).total_count, 1)
        self.assertEqual(settlements.get_user_settlements(self.bob.uuid).total_count, 1)
        with self.assertRaises(NotFoundError):
            settlements.get_settlement(str(uuid.uuid4()))


class HoldingLedger(DatabaseBalanceLedger):
    """Pauses inside the unit of work right after the locked re-check."""

    def __init__(self, checked, release):
        self.checked = checked
        self.release = release

    def get_balance(self, group, participant, currency, for_update=False):
        balance = super().get_balance(group, participant, currency, for_update)
        if for_update:
            self.checked.set()
            self.release.wait(10)
        return balance


class ConcurrentSettlementTest(LedgerFixtureMixin, TransactionTestCase):

    def setUp(self):
        super().setUp()
        # Bob owes Alice 20.00
        self.add_expense(self.alice, "40.00", [self.alice, self.bob])

    def test_two_settlements_cannot_overdraw_one_debt(self):
        checked = threading.Event()
        release = threading.Event()
        outcomes = {}

        def pay(name, ledger):
            try:
                outcomes[name] = self.settle(self.bob, self.alice, "15.00", ledger=ledger)
            except Exception as error:
                outcomes[name] = error
            finally:
                connections.close_all()

        first = threading.Thread(target=pay, args=("first", HoldingLedger(checked, release)))
        second = threading.Thread(target=pay, args=("second", None))

        first.start()
        self.assertTrue(checked.wait(10))
        # the second settlement starts while the first one is mid-transaction
        second.start()
        second.join(2)
        release.set()
        first.join(10)
        second.join(10)

        self.assertIsInstance(outcomes["first"], Settlement)
        self.assertIsInstance(outcomes["second"], (InsufficientDebtError, PersistenceError))
        self.assertEqual(Settlement.objects.count(), 1)
        self.assertEqual(self.balance_of(self.bob), Decimal("5.00"))
        self.assertEqual(self.balance_of(self.alice), Decimal("-5.00"))


# ============================================================================
# DEBT SIMPLIFICATION & BALANCE READS
# ============================================================================

class SimplifyDebtsServiceTest(LedgerFixtureMixin, TestCase):

    def test_suggestions_use_participants(self):
        self.add_expense(self.alice, "90.00", [self.alice, self.bob, self.carol])
        result = settlements.simplify_debts(self.group.uuid)

        self.assertEqual(result.currency, "USD")
        self.assertEqual(
            [(s.from_party, s.to_party, s.amount) for s in result.suggestions],
            [(self.bob, self.alice, Decimal("30.00")), (self.carol, self.alice, Decimal("30.00"))],
        )
        self.assertEqual(result.total_amount, Decimal("60.00"))
        self.assertEqual(result.original_transaction_count, 2)

    def test_following_suggestions_settles_group(self):
        self.add_expense(self.alice, "100.00", [self.alice, self.bob, self.carol])
        self.add_expense(self.bob, "45.00", [self.alice, self.carol], split_type="exact",
                         split_amounts=["15.00", "30.00"])
        for suggestion in settlements.simplify_debts(self.group.uuid).suggestions:
            self.settle(suggestion.from_party, suggestion.to_party, suggestion.amount)
        for _, balance in balances.get_group_balances(self.group.uuid, "USD"):
            self.assertEqual(balance, Decimal("0.00"))
        self.assertEqual(settlements.simplify_debts(self.group.uuid).suggestions, [])

    def test_reads_do_not_change_state(self):
        self.add_expense(self.alice, "100.00", [self.alice, self.bob, self.carol])
        before = list(Balance.objects.values_list("participant_id", "balance"))
        first = settlements.simplify_debts(self.group.uuid)
        second = settlements.simplify_debts(self.group.uuid)
        self.assertEqual(first.suggestions, second.suggestions)
        self.assertEqual(list(Balance.objects.values_list("participant_id", "balance")), before)
        self.assertEqual(Settlement.objects.count(), 0)


class BalanceReadTest(LedgerFixtureMixin, TestCase):

    def setUp(self):
        super().setUp()
        self.add_expense(self.alice, "90.00", [self.alice, self.bob, self.carol])
        self.add_expense(self.bob, "30.00", [self.bob, self.carol])
        self.settle(self.carol, self.alice, "10.00")

    def test_group_balances_sorted_by_debt(self):
        result = balances.get_group_balances(self.group.uuid)
        self.assertEqual(
            result,
            [(self.carol, Decimal("35.00")), (self.bob, Decimal("15.00")), (self.alice, Decimal("-50.00"))],
        )

    def test_balance_sheet_summary(self):
        sheet = balances.get_balance_sheet(self.group.uuid, "usd")
        self.assertEqual(sheet.total_positive, Decimal("50.00"))
        self.assertEqual(sheet.total_negative, Decimal("-50.00"))
        self.assertEqual(sheet.net_balance, Decimal("0.00"))
        self.assertEqual(sheet.user_count, 3)

    def test_user_balance_breakdown(self):
        detail = balances.get_user_balance(self.group.uuid, self.carol.uuid)
        self.assertEqual(detail.balance, Decimal("35.00"))
        self.assertEqual(detail.total_paid, Decimal("0.00"))
        self.assertEqual(detail.total_owed, Decimal("45.00"))
        self.assertEqual(detail.total_settled_out, Decimal("10.00"))
        self.assertEqual(detail.total_settled_in, Decimal("0.00"))
        self.assertEqual(detail.expense_count, 2)
        self.assertEqual(detail.payment_count, 1)
        self.assertEqual(len(detail.recent_settlements), 1)
        self.assertEqual(
            detail.balance,
            detail.total_owed - detail.total_paid - detail.total_settled_out + detail.total_settled_in,
        )

    def test_user_balance_reads_through_given_ledger(self):
        ledger = InMemoryBalanceLedger()
        with ledger.atomic():
            ledger.apply_delta(self.group, self.carol, "USD", Decimal("7.00"))
            ledger.apply_delta(self.group, self.alice, "USD", Decimal("-7.00"))

        detail = balances.get_user_balance(self.group.uuid, self.carol.uuid, ledger=ledger)
        self.assertEqual(detail.balance, Decimal("7.00"))
        self.assertEqual(detail.total_owed, Decimal("45.00"))
        self.assertEqual(detail.last_activity, Settlement.objects.get().created_at)

    def test_user_balance_requires_membership(self):
        with self.assertRaises(ValidationError):
            balances.get_user_balance(self.group.uuid, self.dave.uuid)

    def test_debt_relationships_are_proportional(self):
        relationships = balances.get_debt_relationships(self.group.uuid)
        self.assertEqual(
            [(r.debtor, r.creditor, r.amount) for r in relationships],
            [(self.carol, self.alice, Decimal("35.00")), (self.bob, self.alice, Decimal("15.00"))],
        )


# ============================================================================
# USERS & GROUPS
# ============================================================================

class UserServiceTest(TestCase):

    def test_create_and_lookup(self):
        user = users.create_user("  Erin ", "Erin@Example.com")
        self.assertEqual(user.name, "Erin")
        self.assertEqual(user.email, "erin@example.com")
        self.assertEqual(users.get_user(str(user.uuid)).pk, user.pk)
        self.assertEqual(users.get_user_by_email("ERIN@example.com").pk, user.pk)

    def test_duplicate_email(self):
        users.create_user("Erin", "erin@example.com")
        with self.assertRaises(AlreadyExistsError):
            users.create_user("Other Erin", "ERIN@example.com")

    def test_not_found(self):
        with self.assertRaises(NotFoundError):
            users.get_user(str(uuid.uuid4()))
        with self.assertRaises(NotFoundError):
            users.get_user_by_email("ghost@example.com")
        with self.assertRaises(ValidationError):
            users.get_user("not-a-uuid")

    def test_list_users(self):
        for i in range(3):
            users.create_user(f"User {i}", f"user{i}@example.com")
        page = users.list_users(page=1, limit=2)
        self.assertEqual(page.total_count, 3)
        self.assertEqual(len(page.items), 2)


class GroupServiceTest(LedgerFixtureMixin, TestCase):

    def test_creator_is_first_member(self):
        members = groups.get_group_members(self.group.uuid)
        self.assertEqual(members, [self.alice, self.bob, self.carol])
        self.assertEqual(self.group.created_by, self.alice)

    def test_add_member_twice(self):
        with self.assertRaises(AlreadyExistsError):
            groups.add_member(self.group.uuid, self.bob.uuid)

    def test_user_groups(self):
        other = groups.create_group("Flat", "", self.bob.uuid)
        page = groups.get_user_groups(self.bob.uuid)
        self.assertEqual({g.pk for g in page.items}, {self.group.pk, other.pk})
        self.assertEqual(groups.get_user_groups(self.dave.uuid).total_count, 0)
        self.assertEqual(groups.list_groups().total_count, 2)

    def test_remove_member_without_balance(self):
        groups.remove_member(self.group.uuid, self.carol.uuid)
        self.assertNotIn(self.carol, groups.get_group_members(self.group.uuid))

    def test_remove_member_with_balance(self):
        self.add_expense(self.alice, "40.00", [self.alice, self.bob])
        with self.assertRaises(ValidationError):
            groups.remove_member(self.group.uuid, self.bob.uuid)
        self.settle(self.bob, self.alice, "20.00")
        groups.remove_member(self.group.uuid, self.bob.uuid)
        self.assertNotIn(self.bob, groups.get_group_members(self.group.uuid))

    def test_remove_non_member(self):
        with self.assertRaises(NotFoundError):
            groups.remove_member(self.group.uuid, self.dave.uuid)

    def test_group_validation(self):
        with self.assertRaises(ValidationError):
            groups.create_group("X", "", self.alice.uuid)
        with self.assertRaises(NotFoundError):
            groups.create_group("Valid name", "", str(uuid.uuid4()))


# ============================================================================
# JSON API
# ============================================================================

class ApiTestMixin(LedgerFixtureMixin):

    def setUp(self):
        super().setUp()
        self.http_client = TestClient()

    def post_json(self, url, payload, key=None, raw=None):
        extra = {"HTTP_IDEMPOTENCY_KEY": key} if key else {}
        return self.http_client.post(
            url,
            data=raw if raw is not None else json.dumps(payload),
            content_type="application/json",
            **extra,
        )

    def expense_payload(self, amount="90.00"):
        return {
            "group_id": str(self.group.uuid),
            "paid_by": str(self.alice.uuid),
            "amount": amount,
            "description": "Groceries",
            "split_type": "equal",
            "splits": [{"user_id": str(u.uuid)} for u in (self.alice, self.bob, self.carol)],
        }


class HealthViewTest(TestCase):

    def test_health(self):
        response = TestClient().get(reverse("health"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["status"], "healthy")


class UserAndGroupApiTest(ApiTestMixin, TestCase):

    def test_create_user(self):
        response = self.post_json(reverse("ledger:user_list"), {"name": "Erin", "email": "erin@example.com"})
        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["data"]["email"], "erin@example.com")

    def test_duplicate_user(self):
        response = self.post_json(reverse("ledger:user_list"), {"name": "Alice", "email": "alice@example.com"})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "ALREADY_EXISTS")

    def test_malformed_json(self):
        response = self.post_json(reverse("ledger:user_list"), None, raw="{not json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_user_lookup_routes(self):
        response = self.http_client.get(reverse("ledger:user_by_email"), {"email": "bob@example.com"})
        self.assertEqual(response.json()["data"]["id"], str(self.bob.uuid))
        response = self.http_client.get(reverse("ledger:user_detail", args=[str(uuid.uuid4())]))
        self.assertEqual(response.status_code, 404)
        response = self.http_client.get(reverse("ledger:user_detail", args=["nope"]))
        self.assertEqual(response.status_code, 400)

    def test_list_users_meta(self):
        response = self.http_client.get(reverse("ledger:user_list"), {"page": 1, "limit": 2})
        body = response.json()
        self.assertEqual(len(body["data"]), 2)
        self.assertEqual(body["meta"]["total"], 4)
        self.assertEqual(body["meta"]["total_pages"], 2)

    def test_create_group_and_members(self):
        response = self.post_json(
            reverse("ledger:group_list"),
            {"name": "Flatmates", "description": "Rent", "creator_id": str(self.dave.uuid)},
        )
        self.assertEqual(response.status_code, 201)
        group_id = response.json()["data"]["id"]
        self.assertEqual(len(response.json()["data"]["members"]), 1)

        response = self.post_json(reverse("ledger:group_members", args=[group_id]), {"user_id": str(self.bob.uuid)})
        self.assertEqual(response.status_code, 201)

        response = self.http_client.get(reverse("ledger:group_members", args=[group_id]))
        self.assertEqual(len(response.json()["data"]), 2)

        response = self.http_client.delete(
            reverse("ledger:group_member_detail", args=[group_id, str(self.bob.uuid)])
        )
        self.assertEqual(response.status_code, 200)

    def test_method_not_allowed(self):
        response = self.http_client.put(reverse("ledger:user_list"))
        self.assertEqual(response.status_code, 405)


class ExpenseApiTest(ApiTestMixin, TestCase):

    def test_create_expense(self):
        response = self.post_json(reverse("ledger:expense_list"), self.expense_payload(), key=str(uuid.uuid4()))
        self.assertEqual(response.status_code, 201)
        data = response.json()["data"]
        self.assertEqual(data["amount"], "90.00")
        self.assertEqual(data["currency"], "USD")
        self.assertEqual([s["amount"] for s in data["splits"]], ["30.00", "30.00", "30.00"])

    def test_numeric_amount_is_not_a_float(self):
        payload = self.expense_payload()
        raw = json.dumps(payload).replace('"90.00"', "100.10")
        response = self.post_json(reverse("ledger:expense_list"), None, key=str(uuid.uuid4()), raw=raw)
        self.assertEqual(response.status_code, 201)
        self.assertEqual(Expense.objects.get().amount, Decimal("100.10"))

    def test_idempotency_key_required(self):
        response = self.post_json(reverse("ledger:expense_list"), self.expense_payload())
        self.assertEqual(response.status_code, 400)
        response = self.post_json(reverse("ledger:expense_list"), self.expense_payload(), key="abc")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(Expense.objects.count(), 0)

    def test_replay_returns_stored_response(self):
        key = str(uuid.uuid4())
        first = self.post_json(reverse("ledger:expense_list"), self.expense_payload(), key=key)
        second = self.post_json(reverse("ledger:expense_list"), self.expense_payload(), key=key)

        self.assertEqual(second.status_code, 201)
        self.assertEqual(second["X-Idempotent-Replayed"], "true")
        self.assertEqual(second.json(), first.json())
        self.assertEqual(Expense.objects.count(), 1)
        self.assertEqual(self.balance_of(self.bob), Decimal("30.00"))

    def test_key_reuse_with_different_body(self):
        key = str(uuid.uuid4())
        self.post_json(reverse("ledger:expense_list"), self.expense_payload(), key=key)
        response = self.post_json(reverse("ledger:expense_list"), self.expense_payload("60.00"), key=key)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "IDEMPOTENCY_ERROR")
        self.assertEqual(Expense.objects.count(), 1)

    def test_expired_key_is_ignored(self):
        key = str(uuid.uuid4())
        IdempotencyRecord.objects.create(
            key=key, request_hash="old", response_body="{}", status_code=201,
            expires_at=timezone.now() - timedelta(minutes=1),
        )
        response = self.post_json(reverse("ledger:expense_list"), self.expense_payload(), key=key)
        self.assertEqual(response.status_code, 201)
        self.assertNotEqual(IdempotencyRecord.objects.get(key=key).request_hash, "old")

    def test_key_is_reserved_once(self):
        key = str(uuid.uuid4())
        self.assertTrue(reserve_key(key, "hash"))
        self.assertFalse(reserve_key(key, "hash"))
        self.assertEqual(IdempotencyRecord.objects.get(key=key).status_code, IN_PROGRESS)

    def test_key_still_in_progress(self):
        key = str(uuid.uuid4())
        body = json.dumps(self.expense_payload())
        pending = RequestFactory().post(reverse("ledger:expense_list"), data=body, content_type="application/json")
        reserve_key(key, request_fingerprint(pending))

        response = self.post_json(reverse("ledger:expense_list"), None, key=key, raw=body)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "IDEMPOTENCY_ERROR")
        self.assertEqual(Expense.objects.count(), 0)

    def test_server_error_releases_key(self):
        key = str(uuid.uuid4())
        with mock.patch.object(expenses, "create_expense", side_effect=RuntimeError("disk on fire")):
            response = self.post_json(reverse("ledger:expense_list"), self.expense_payload(), key=key)
        self.assertEqual(response.status_code, 500)
        self.assertFalse(IdempotencyRecord.objects.filter(key=key).exists())

        response = self.post_json(reverse("ledger:expense_list"), self.expense_payload(), key=key)
        self.assertEqual(response.status_code, 201)
        self.assertEqual(IdempotencyRecord.objects.get(key=key).status_code, 201)

    def test_split_error_is_stored_and_replayed(self):
        key = str(uuid.uuid4())
        payload = self.expense_payload()
        payload["split_type"] = "exact"
        payload["splits"] = [{"user_id": str(self.alice.uuid), "amount": "10.00"}]
        first = self.post_json(reverse("ledger:expense_list"), payload, key=key)
        self.assertEqual(first.status_code, 400)
        self.assertEqual(first.json()["error"]["code"], "INVALID_SPLIT")
        second = self.post_json(reverse("ledger:expense_list"), payload, key=key)
        self.assertEqual(second["X-Idempotent-Replayed"], "true")

    def test_list_and_detail(self):
        expense = self.add_expense(self.alice, "90.00", [self.alice, self.bob, self.carol])
        response = self.http_client.get(reverse("ledger:expense_list"), {"group_id": str(self.group.uuid)})
        self.assertEqual(response.json()["meta"]["total"], 1)
        response = self.http_client.get(reverse("ledger:expense_detail", args=[str(expense.uuid)]))
        self.assertEqual(response.json()["data"]["description"], "Dinner")
        response = self.http_client.get(reverse("ledger:group_expenses", args=[str(self.group.uuid)]))
        self.assertEqual(len(response.json()["data"]), 1)
        response = self.http_client.get(reverse("ledger:expense_list"), {"date_from": "soon"})
        self.assertEqual(response.status_code, 400)


class SettlementApiTest(ApiTestMixin, TestCase):

    def setUp(self):
        super().setUp()
        self.add_expense(self.alice, "40.00", [self.alice, self.bob])

    def settlement_payload(self, amount):
        return {
            "group_id": str(self.group.uuid),
            "from_user_id": str(self.bob.uuid),
            "to_user_id": str(self.alice.uuid),
            "amount": amount,
        }

    def test_insufficient_debt(self):
        response = self.post_json(reverse("ledger:settlement_list"), self.settlement_payload("50.00"),
                                  key=str(uuid.uuid4()))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "INSUFFICIENT_DEBT")

    def test_create_and_read_back(self):
        response = self.post_json(reverse("ledger:settlement_list"), self.settlement_payload("20.00"),
                                  key=str(uuid.uuid4()))
        self.assertEqual(response.status_code, 201)
        settlement_id = response.json()["data"]["id"]
        response = self.http_client.get(reverse("ledger:settlement_detail", args=[settlement_id]))
        self.assertEqual(response.json()["data"]["amount"], "20.00")
        response = self.http_client.get(reverse("ledger:user_settlements", args=[str(self.alice.uuid)]))
        self.assertEqual(len(response.json()["data"]), 1)

    def test_group_reports(self):
        group_id = str(self.group.uuid)

        response = self.http_client.get(reverse("ledger:group_simplify_debts", args=[group_id]))
        data = response.json()["data"]
        self.assertEqual(len(data["suggestions"]), 1)
        self.assertEqual(data["suggestions"][0]["from_user"]["id"], str(self.bob.uuid))
        self.assertEqual(data["total_amount"], "20.00")

        response = self.http_client.get(reverse("ledger:group_balance_sheet", args=[group_id]))
        self.assertEqual(response.json()["data"]["summary"]["net_balance"], "0.00")

        response = self.http_client.get(reverse("ledger:group_debt_relationships", args=[group_id]))
        self.assertEqual(response.json()["data"][0]["amount"], "20.00")

        response = self.http_client.get(
            reverse("ledger:group_user_balance", args=[group_id, str(self.bob.uuid)])
        )
        self.assertEqual(response.json()["data"]["balance"], "20.00")

    def test_unknown_group(self):
        payload = self.settlement_payload("5.00")
        payload["group_id"] = str(uuid.uuid4())
        response = self.post_json(reverse("ledger:settlement_list"), payload, key=str(uuid.uuid4()))
        self.assertEqual(response.status_code, 404)


# ============================================================================
# MANAGEMENT COMMANDS
# ============================================================================

class ManagementCommandTest(LedgerFixtureMixin, TestCase):

    def setUp(self):
        super().setUp()
        self.add_expense(self.alice, "90.00", [self.alice, self.bob, self.carol])
        self.settle(self.bob, self.alice, "10.00")

    def test_verify_balances_ok(self):
        out = StringIO()
        call_command("verify_balances", "--history", stdout=out)
        self.assertIn("consistent", out.getvalue())

    def test_verify_balances_detects_imbalance(self):
        Balance.objects.filter(group=self.group, participant=self.bob).update(balance=Decimal("99.00"))
        with self.assertRaises(CommandError):
            call_command("verify_balances", stdout=StringIO())

    def test_rebuild_balances(self):
        Balance.objects.filter(group=self.group, participant=self.bob).update(balance=Decimal("99.00"))

        call_command("rebuild_balances", "--dry-run", stdout=StringIO())
        self.assertEqual(self.balance_of(self.bob), Decimal("99.00"))

        call_command("rebuild_balances", stdout=StringIO())
        self.assertEqual(self.balance_of(self.bob), Decimal("20.00"))
        self.assertEqual(balances.balance_drift(), [])

    def test_cleanup_idempotency_keys(self):
        now = timezone.now()
        IdempotencyRecord.objects.create(
            key="expired", request_hash="h", status_code=201, expires_at=now - timedelta(hours=1),
        )
        IdempotencyRecord.objects.create(
            key="live", request_hash="h", status_code=201, expires_at=now + timedelta(hours=1),
        )
        out = StringIO()
        call_command("cleanup_idempotency_keys", stdout=out)
        self.assertEqual(list(IdempotencyRecord.objects.values_list("key", flat=True)), ["live"])
        self.assertIn("Deleted 1", out.getvalue())


class LedgerErrorMappingTest(SimpleTestCase):

    def test_every_error_kind_has_http_status(self):
        for kind in ErrorKind:
            self.assertIn(kind.status, (400, 404, 409, 500))
        self.assertTrue(issubclass(ValidationError, LedgerError))
