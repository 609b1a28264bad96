"""
Plain dict renderings of ledger objects for JSON responses.
Money is always rendered as a string with 2 decimals.
"""

from ledger.utils.money import format_money


def _timestamp(value):
    return value.isoformat() if value else None


def user_to_dict(user):
    return {
        "id": str(user.uuid),
        "name": user.name,
        "email": user.email,
        "created_at": _timestamp(user.created_at),
        "updated_at": _timestamp(user.updated_at),
    }


def group_to_dict(group, members=None):
    data = {
        "id": str(group.uuid),
        "name": group.name,
        "description": group.description,
        "created_by": user_to_dict(group.created_by),
        "created_at": _timestamp(group.created_at),
        "updated_at": _timestamp(group.updated_at),
    }
    if members is not None:
        data["members"] = [user_to_dict(member) for member in members]
    return data


def split_to_dict(split):
    return {
        "user": user_to_dict(split.participant),
        "amount": format_money(split.amount),
        "percentage": format_money(split.percentage) if split.percentage is not None else None,
    }


def expense_to_dict(expense):
    return {
        "id": str(expense.uuid),
        "group_id": str(expense.group.uuid),
        "paid_by": user_to_dict(expense.paid_by),
        "amount": format_money(expense.amount),
        "currency": expense.currency,
        "description": expense.description,
        "split_type": expense.split_type,
        "splits": [split_to_dict(split) for split in expense.splits.all()],
        "created_at": _timestamp(expense.created_at),
        "updated_at": _timestamp(expense.updated_at),
    }


def settlement_to_dict(settlement):
    return {
        "id": str(settlement.uuid),
        "group_id": str(settlement.group.uuid),
        "from_user": user_to_dict(settlement.from_participant),
        "to_user": user_to_dict(settlement.to_participant),
        "amount": format_money(settlement.amount),
        "currency": settlement.currency,
        "description": settlement.description,
        "created_at": _timestamp(settlement.created_at),
    }


def balance_to_dict(participant, balance, currency):
    return {
        "user": user_to_dict(participant),
        "balance": format_money(balance),
        "currency": currency,
    }


def balance_sheet_to_dict(sheet):
    return {
        "group": group_to_dict(sheet.group),
        "currency": sheet.currency,
        "balances": [balance_to_dict(p, b, sheet.currency) for p, b in sheet.balances],
        "summary": {
            "total_positive": format_money(sheet.total_positive),
            "total_negative": format_money(sheet.total_negative),
            "net_balance": format_money(sheet.net_balance),
            "user_count": sheet.user_count,
        },
    }


def user_balance_to_dict(detail):
    return {
        "user": user_to_dict(detail.participant),
        "group_id": str(detail.group.uuid),
        "balance": format_money(detail.balance),
        "currency": detail.currency,
        "breakdown": {
            "total_paid": format_money(detail.total_paid),
            "total_owed": format_money(detail.total_owed),
            "total_settled_out": format_money(detail.total_settled_out),
            "total_settled_in": format_money(detail.total_settled_in),
            "expense_count": detail.expense_count,
            "payment_count": detail.payment_count,
        },
        "recent_settlements": [settlement_to_dict(s) for s in detail.recent_settlements],
        "last_activity": _timestamp(detail.last_activity),
    }


def suggestion_to_dict(suggestion, currency):
    return {
        "from_user": user_to_dict(suggestion.from_party),
        "to_user": user_to_dict(suggestion.to_party),
        "amount": format_money(suggestion.amount),
        "currency": currency,
    }


def simplification_to_dict(simplification):
    return {
        "group_id": str(simplification.group.uuid),
        "currency": simplification.currency,
        "suggestions": [
            suggestion_to_dict(s, simplification.currency) for s in simplification.suggestions
        ],
        "original_transaction_count": simplification.original_transaction_count,
        "simplified_transaction_count": simplification.simplified_transaction_count,
        "savings": simplification.savings,
        "total_amount": format_money(simplification.total_amount),
    }


def debt_relationship_to_dict(relationship):
    return {
        "debtor": user_to_dict(relationship.debtor),
        "creditor": user_to_dict(relationship.creditor),
        "amount": format_money(relationship.amount),
        "currency": relationship.currency,
    }
