from django.contrib import admin

from .models import Balance, Expense, ExpenseGroup, ExpenseSplit, GroupMembership, IdempotencyRecord, Participant, Settlement


@admin.register(Participant)
class ParticipantAdmin(admin.ModelAdmin):
    list_display = ("name", "email", "uuid", "created_at")
    search_fields = ("name", "email", "uuid")


class GroupMembershipInline(admin.TabularInline):
    model = GroupMembership
    extra = 0
    raw_id_fields = ("participant",)


@admin.register(ExpenseGroup)
class ExpenseGroupAdmin(admin.ModelAdmin):
    list_display = ("name", "created_by", "uuid", "created_at")
    search_fields = ("name", "uuid", "created_by__name")
    inlines = [GroupMembershipInline]


class ExpenseSplitInline(admin.TabularInline):
    model = ExpenseSplit
    extra = 0
    readonly_fields = ("participant", "amount", "percentage")
    can_delete = False


# Expenses, settlements and balances are written only through the ledger
# services; the admin shows them read-only.
class ReadOnlyAdmin(admin.ModelAdmin):
    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Expense)
class ExpenseAdmin(ReadOnlyAdmin):
    list_display = ("created_at", "group", "paid_by", "amount", "currency", "split_type", "description")
    list_filter = ("split_type", "currency", "group")
    date_hierarchy = "created_at"
    search_fields = ("description", "uuid", "group__name", "paid_by__name")
    inlines = [ExpenseSplitInline]


@admin.register(Settlement)
class SettlementAdmin(ReadOnlyAdmin):
    list_display = ("created_at", "group", "from_participant", "to_participant", "amount", "currency")
    list_filter = ("currency", "group")
    date_hierarchy = "created_at"
    search_fields = ("uuid", "group__name", "from_participant__name", "to_participant__name")


@admin.register(Balance)
class BalanceAdmin(ReadOnlyAdmin):
    list_display = ("group", "participant", "currency", "balance", "last_updated")
    list_filter = ("currency", "group")
    search_fields = ("group__name", "participant__name", "participant__email")


@admin.register(IdempotencyRecord)
class IdempotencyRecordAdmin(admin.ModelAdmin):
    list_display = ("key", "status_code", "created_at", "expires_at")
    search_fields = ("key",)
    readonly_fields = ("key", "request_hash", "response_body", "status_code", "created_at", "expires_at")
