import functools
import json
import logging
from decimal import Decimal

from django.db import connection
from django.db.utils import DatabaseError
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from ledger import serializers
from ledger.errors import LedgerError, ValidationError
from ledger.idempotency import idempotent
from ledger.responses import api_error, api_success, ledger_error_response
from ledger.services import balances, expenses, groups, settlements, users
from ledger.utils.validation import validate_date


logger = logging.getLogger(__name__)


def _guarded(view_func):
    @functools.wraps(view_func)
    def handle(request, *args, **kwargs):
        try:
            return view_func(request, *args, **kwargs)
        except LedgerError as error:
            if error.status >= 500:
                logger.error("%s %s failed: %s", request.method, request.path, error)
            return ledger_error_response(error)
        except Exception:
            logger.exception("Unhandled error in %s %s", request.method, request.path)
            return api_error("INTERNAL_ERROR", "Internal server error", 500)

    return handle


def api_view(*methods, idempotent_post=False):
    """
    Wrap a JSON API view: CSRF exempt, method restricted, LedgerError mapped
    to its status, anything else logged and returned as a 500.
    """

    def decorator(view_func):
        view = _guarded(view_func)
        if idempotent_post:
            # stored responses include mapped 4xx errors
            view = _guarded(idempotent(view))
        return csrf_exempt(require_http_methods(list(methods))(view))

    return decorator


def _json_body(request) -> dict:
    if not request.body:
        raise ValidationError("Request body is required")
    try:
        data = json.loads(request.body, parse_float=Decimal)
    except (ValueError, UnicodeDecodeError):
        raise ValidationError("Invalid JSON body")
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _page_args(request):
    return request.GET.get("page", 1), request.GET.get("limit")


def _paged(page, serialize):
    return api_success([serialize(item) for item in page.items], meta=page.meta())


# =========================
# HEALTH
# =========================
@require_http_methods(["GET"])
def health(request):
    database = "ok"
    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
    except DatabaseError:
        logger.exception("Health check database probe failed")
        database = "unavailable"
    status = 200 if database == "ok" else 503
    return api_success(
        {"status": "healthy" if status == 200 else "unhealthy", "database": database,
         "timestamp": timezone.now().isoformat()},
        status=status,
    )


# =========================
# USERS
# =========================
@api_view("GET", "POST")
def user_list(request):
    if request.method == "POST":
        data = _json_body(request)
        user = users.create_user(data.get("name"), data.get("email"))
        return api_success(serializers.user_to_dict(user), status=201)
    return _paged(users.list_users(*_page_args(request)), serializers.user_to_dict)


@api_view("GET")
def user_by_email(request):
    user = users.get_user_by_email(request.GET.get("email"))
    return api_success(serializers.user_to_dict(user))


@api_view("GET")
def user_detail(request, user_id):
    return api_success(serializers.user_to_dict(users.get_user(user_id)))


@api_view("GET")
def user_groups(request, user_id):
    page = groups.get_user_groups(user_id, *_page_args(request))
    return _paged(page, serializers.group_to_dict)


@api_view("GET")
def user_expenses(request, user_id):
    page = expenses.get_user_expenses(user_id, *_page_args(request))
    return _paged(page, serializers.expense_to_dict)


@api_view("GET")
def user_settlements(request, user_id):
    page = settlements.get_user_settlements(user_id, *_page_args(request))
    return _paged(page, serializers.settlement_to_dict)


# =========================
# GROUPS
# =========================
@api_view("GET", "POST")
def group_list(request):
    if request.method == "POST":
        data = _json_body(request)
        creator = data.get("creator_id") or request.GET.get("creator_id")
        group = groups.create_group(data.get("name"), data.get("description"), creator)
        return api_success(
            serializers.group_to_dict(group, members=groups.get_group_members(group.uuid)),
            status=201,
        )
    return _paged(groups.list_groups(*_page_args(request)), serializers.group_to_dict)


@api_view("GET")
def group_detail(request, group_id):
    group = groups.get_group(group_id)
    return api_success(serializers.group_to_dict(group, members=groups.get_group_members(group_id)))


@api_view("GET", "POST")
def group_members(request, group_id):
    if request.method == "POST":
        data = _json_body(request)
        membership = groups.add_member(group_id, data.get("user_id"))
        return api_success(
            {"group_id": str(membership.group.uuid), "user": serializers.user_to_dict(membership.participant)},
            status=201,
        )
    members = groups.get_group_members(group_id)
    return api_success([serializers.user_to_dict(member) for member in members])


@api_view("DELETE")
def group_member_detail(request, group_id, user_id):
    groups.remove_member(group_id, user_id)
    return api_success({"group_id": group_id, "user_id": user_id, "removed": True})


@api_view("GET")
def group_expenses(request, group_id):
    page = expenses.get_group_expenses(group_id, *_page_args(request))
    return _paged(page, serializers.expense_to_dict)


@api_view("GET")
def group_settlements(request, group_id):
    page = settlements.get_group_settlements(group_id, *_page_args(request))
    return _paged(page, serializers.settlement_to_dict)


@api_view("GET")
def group_simplify_debts(request, group_id):
    result = settlements.simplify_debts(group_id, request.GET.get("currency"))
    return api_success(serializers.simplification_to_dict(result))


@api_view("GET")
def group_balance_sheet(request, group_id):
    sheet = balances.get_balance_sheet(group_id, request.GET.get("currency"))
    return api_success(serializers.balance_sheet_to_dict(sheet))


@api_view("GET")
def group_debt_relationships(request, group_id):
    relationships = balances.get_debt_relationships(group_id, request.GET.get("currency"))
    return api_success([serializers.debt_relationship_to_dict(r) for r in relationships])


@api_view("GET")
def group_user_balance(request, group_id, user_id):
    detail = balances.get_user_balance(group_id, user_id, request.GET.get("currency"))
    return api_success(serializers.user_balance_to_dict(detail))


# =========================
# EXPENSES
# =========================
def _expense_request(data) -> expenses.CreateExpenseRequest:
    raw_splits = data.get("splits") or []
    if not isinstance(raw_splits, list) or not all(isinstance(s, dict) for s in raw_splits):
        raise ValidationError("Field 'splits' must be a list of objects")
    return expenses.CreateExpenseRequest(
        group_id=data.get("group_id"),
        paid_by=data.get("paid_by"),
        amount=data.get("amount"),
        description=data.get("description"),
        split_type=data.get("split_type"),
        currency=data.get("currency") or "",
        splits=[
            expenses.ExpenseSplitRequest(
                user_id=split.get("user_id"),
                amount=split.get("amount"),
                percentage=split.get("percentage"),
            )
            for split in raw_splits
        ],
    )


@api_view("GET", "POST", idempotent_post=True)
def expense_list(request):
    if request.method == "POST":
        expense = expenses.create_expense(_expense_request(_json_body(request)))
        return api_success(serializers.expense_to_dict(expense), status=201)

    params = request.GET
    filters = expenses.ExpenseFilter(
        group_id=params.get("group_id"),
        user_id=params.get("user_id"),
        currency=params.get("currency"),
        split_type=params.get("split_type"),
        date_from=validate_date(params.get("date_from"), "date_from"),
        date_to=validate_date(params.get("date_to"), "date_to"),
        page=params.get("page", 1),
        limit=params.get("limit"),
    )
    return _paged(expenses.list_expenses(filters), serializers.expense_to_dict)


@api_view("GET")
def expense_detail(request, expense_id):
    return api_success(serializers.expense_to_dict(expenses.get_expense(expense_id)))


# =========================
# SETTLEMENTS
# =========================
@api_view("GET", "POST", idempotent_post=True)
def settlement_list(request):
    if request.method == "POST":
        data = _json_body(request)
        settlement = settlements.create_settlement(
            settlements.CreateSettlementRequest(
                group_id=data.get("group_id"),
                from_user_id=data.get("from_user_id"),
                to_user_id=data.get("to_user_id"),
                amount=data.get("amount"),
                currency=data.get("currency") or "",
                description=data.get("description") or "",
            )
        )
        return api_success(serializers.settlement_to_dict(settlement), status=201)

    params = request.GET
    filters = settlements.SettlementFilter(
        group_id=params.get("group_id"),
        user_id=params.get("user_id"),
        from_user_id=params.get("from_user_id"),
        to_user_id=params.get("to_user_id"),
        currency=params.get("currency"),
        date_from=validate_date(params.get("date_from"), "date_from"),
        date_to=validate_date(params.get("date_to"), "date_to"),
        page=params.get("page", 1),
        limit=params.get("limit"),
    )
    return _paged(settlements.list_settlements(filters), serializers.settlement_to_dict)


@api_view("GET")
def settlement_detail(request, settlement_id):
    return api_success(serializers.settlement_to_dict(settlements.get_settlement(settlement_id)))
