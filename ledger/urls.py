from django.urls import path

from . import views


app_name = "ledger"

urlpatterns = [
    # Users
    path("users", views.user_list, name="user_list"),
    path("users/by-email", views.user_by_email, name="user_by_email"),
    path("users/<str:user_id>", views.user_detail, name="user_detail"),
    path("users/<str:user_id>/groups", views.user_groups, name="user_groups"),
    path("users/<str:user_id>/expenses", views.user_expenses, name="user_expenses"),
    path("users/<str:user_id>/settlements", views.user_settlements, name="user_settlements"),

    # Groups
    path("groups", views.group_list, name="group_list"),
    path("groups/<str:group_id>", views.group_detail, name="group_detail"),
    path("groups/<str:group_id>/members", views.group_members, name="group_members"),
    path("groups/<str:group_id>/members/<str:user_id>", views.group_member_detail, name="group_member_detail"),
    path("groups/<str:group_id>/expenses", views.group_expenses, name="group_expenses"),
    path("groups/<str:group_id>/settlements", views.group_settlements, name="group_settlements"),
    path("groups/<str:group_id>/simplify-debts", views.group_simplify_debts, name="group_simplify_debts"),
    path("groups/<str:group_id>/balance-sheet", views.group_balance_sheet, name="group_balance_sheet"),
    path("groups/<str:group_id>/debt-relationships", views.group_debt_relationships, name="group_debt_relationships"),
    path("groups/<str:group_id>/users/<str:user_id>/balance", views.group_user_balance, name="group_user_balance"),

    # Expenses
    path("expenses", views.expense_list, name="expense_list"),
    path("expenses/<str:expense_id>", views.expense_detail, name="expense_detail"),

    # Settlements
    path("settlements", views.settlement_list, name="settlement_list"),
    path("settlements/<str:settlement_id>", views.settlement_detail, name="settlement_detail"),
]
