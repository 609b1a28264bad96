"""
JSON envelope shared by every API view:

    {"success": true,  "data": {...}, "meta": {...}}
    {"success": false, "error": {"code": "...", "message": "..."}}
"""

from django.http import JsonResponse


def api_success(data=None, status=200, meta=None):
    body = {"success": True, "data": data}
    if meta is not None:
        body["meta"] = meta
    return JsonResponse(body, status=status)


def api_error(code, message, status):
    return JsonResponse(
        {"success": False, "error": {"code": code, "message": message}},
        status=status,
    )


def ledger_error_response(error):
    """Render a LedgerError with the status of its kind."""
    return api_error(error.code, error.message, error.status)
