import uuid

from django.db import models
from django.db.models import F, Q
from decimal import Decimal


class TimeStampedModel(models.Model):
    """Abstract base to track created/updated timestamps."""

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class Participant(TimeStampedModel):
    """A person who pays for expenses and owes shares of them."""

    uuid = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    name = models.CharField(max_length=255)
    email = models.EmailField(max_length=255, unique=True)

    class Meta:
        ordering = ["name", "id"]

    def __str__(self) -> str:
        return f"{self.name} <{self.email}>"


class ExpenseGroup(TimeStampedModel):
    """
    A set of participants sharing expenses.
    Balances, expenses and settlements are always scoped to one group.
    """

    uuid = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    created_by = models.ForeignKey(Participant, related_name="created_groups", on_delete=models.PROTECT)
    members = models.ManyToManyField(Participant, through="GroupMembership", related_name="expense_groups")

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["created_by"], name="ledger_group_creator_idx"),
        ]

    def __str__(self) -> str:
        return self.name


class GroupMembership(models.Model):
    """Links a Participant to an ExpenseGroup."""

    group = models.ForeignKey(ExpenseGroup, related_name="memberships", on_delete=models.CASCADE)
    participant = models.ForeignKey(Participant, related_name="memberships", on_delete=models.CASCADE)
    joined_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ("group", "participant")
        ordering = ["joined_at", "id"]

    def __str__(self) -> str:
        return f"{self.participant.name} in {self.group.name}"


class Expense(TimeStampedModel):
    """
    Immutable record of one payment made on behalf of the group.

    The splits of an expense always sum to its amount; this is enforced when
    the expense is created (ledger.services.expenses.create_expense).
    """

    SPLIT_EQUAL = "equal"
    SPLIT_EXACT = "exact"
    SPLIT_PERCENTAGE = "percentage"

    SPLIT_TYPES = [
        (SPLIT_EQUAL, "Split equally"),
        (SPLIT_EXACT, "Exact amounts"),
        (SPLIT_PERCENTAGE, "Percentages"),
    ]

    uuid = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    group = models.ForeignKey(ExpenseGroup, related_name="expenses", on_delete=models.CASCADE)
    paid_by = models.ForeignKey(Participant, related_name="expenses_paid", on_delete=models.PROTECT)
    amount = models.DecimalField(max_digits=14, decimal_places=2)
    currency = models.CharField(max_length=3, default="USD")
    description = models.TextField()
    split_type = models.CharField(max_length=20, choices=SPLIT_TYPES)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["group", "currency"], name="ledger_expense_group_cur_idx"),
            models.Index(fields=["paid_by"], name="ledger_expense_paid_by_idx"),
            models.Index(fields=["created_at"], name="ledger_expense_created_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name="expense_amount_positive"),
        ]

    def __str__(self) -> str:
        return f"{self.description} {self.amount} {self.currency}"

    @property
    def split_total(self) -> Decimal:
        return sum((split.amount for split in self.splits.all()), Decimal("0.00"))


class ExpenseSplit(models.Model):
    """One participant's owed share of an expense."""

    expense = models.ForeignKey(Expense, related_name="splits", on_delete=models.CASCADE)
    participant = models.ForeignKey(Participant, related_name="expense_splits", on_delete=models.PROTECT)
    amount = models.DecimalField(max_digits=14, decimal_places=2)
    percentage = models.DecimalField(max_digits=5, decimal_places=2, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ("expense", "participant")
        ordering = ["id"]

    def __str__(self) -> str:
        return f"{self.participant.name} owes {self.amount} for {self.expense.description}"


class Settlement(models.Model):
    """
    Immutable record of a debt payment from one member to another.

    Reduces the payer's debt and the receiver's credit by the same amount.
    """

    uuid = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    group = models.ForeignKey(ExpenseGroup, related_name="settlements", on_delete=models.CASCADE)
    from_participant = models.ForeignKey(Participant, related_name="settlements_paid", on_delete=models.PROTECT)
    to_participant = models.ForeignKey(Participant, related_name="settlements_received", on_delete=models.PROTECT)
    amount = models.DecimalField(max_digits=14, decimal_places=2)
    currency = models.CharField(max_length=3, default="USD")
    description = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["group", "currency"], name="ledger_settle_group_cur_idx"),
            models.Index(fields=["from_participant"], name="ledger_settle_from_idx"),
            models.Index(fields=["to_participant"], name="ledger_settle_to_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name="settlement_amount_positive"),
            models.CheckConstraint(
                condition=~Q(from_participant=F("to_participant")),
                name="settlement_distinct_participants",
            ),
        ]

    def clean(self):
        from django.core.exceptions import ValidationError
        if self.from_participant_id and self.from_participant_id == self.to_participant_id:
            raise ValidationError("From user and to user cannot be the same")
        if self.amount is not None and self.amount <= 0:
            raise ValidationError("Settlement amount must be greater than zero")

    def __str__(self) -> str:
        return f"{self.from_participant.name} → {self.to_participant.name} {self.amount} {self.currency}"


class Balance(models.Model):
    """
    Running balance of one participant in one group and currency.

    Positive: the participant owes money into the group (net debtor)
    Negative: the participant is owed money (net creditor)

    Rows are created at zero on first use, changed only through
    BalanceLedger.apply_delta, and never deleted while the group exists.
    """

    group = models.ForeignKey(ExpenseGroup, related_name="balances", on_delete=models.CASCADE)
    participant = models.ForeignKey(Participant, related_name="balances", on_delete=models.CASCADE)
    currency = models.CharField(max_length=3)
    balance = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    last_updated = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = ("group", "participant", "currency")
        ordering = ["-balance", "participant_id"]
        indexes = [
            models.Index(fields=["group", "currency"], name="ledger_balance_group_cur_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.participant.name} in {self.group.name}: {self.balance} {self.currency}"


class IdempotencyRecord(models.Model):
    """Stored response for a client-supplied Idempotency-Key."""

    key = models.CharField(max_length=64, unique=True)
    request_hash = models.CharField(max_length=64)
    response_body = models.TextField(blank=True)
    status_code = models.PositiveSmallIntegerField()
    created_at = models.DateTimeField(auto_now_add=True)
    expires_at = models.DateTimeField(db_index=True)

    def __str__(self) -> str:
        return f"{self.key} ({self.status_code})"
