"""
Idempotency-Key handling for money-moving POST endpoints.

A client sends `Idempotency-Key: <uuid>` with each create request. The first
response (status < 500) is stored with a fingerprint of the request. A retry
with the same key:
- same fingerprint      → stored response replayed, X-Idempotent-Replayed: true
- different fingerprint → 409 IDEMPOTENCY_ERROR
- first request still running → 409 IDEMPOTENCY_ERROR
The key is reserved with an insert guarded by its unique constraint before
the view runs, so concurrent requests with one key cannot both write. A 5xx
response releases the reservation so the client can retry.
Records expire after LEDGER_IDEMPOTENCY_TTL_HOURS; expired ones are ignored
and removed by `manage.py cleanup_idempotency_keys`.
"""

import functools
import hashlib
import json
import logging
from datetime import timedelta

from django.conf import settings
from django.db import DatabaseError, IntegrityError, transaction
from django.http import HttpResponse
from django.utils import timezone

from ledger.errors import IdempotencyError, ValidationError
from ledger.models import IdempotencyRecord
from ledger.responses import ledger_error_response
from ledger.utils.validation import is_valid_uuid


logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"
REPLAYED_HEADER = "X-Idempotent-Replayed"

# status_code of a reserved key whose request has not finished yet
IN_PROGRESS = 0


def request_fingerprint(request) -> str:
    """SHA-256 over method, path, raw query string and body."""
    payload = json.dumps(
        {
            "method": request.method,
            "path": request.path,
            "query": request.META.get("QUERY_STRING", ""),
            "body": request.body.decode("utf-8", errors="replace"),
        },
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def ttl() -> timedelta:
    return timedelta(hours=getattr(settings, "LEDGER_IDEMPOTENCY_TTL_HOURS", 24))


def find_record(key):
    """Live record for `key`, or None when absent or expired."""
    return IdempotencyRecord.objects.filter(key=key, expires_at__gt=timezone.now()).first()


def reserve_key(key, request_hash) -> bool:
    """
    Claim `key` before the request runs. The unique constraint on key lets
    exactly one of several concurrent requests win; the others get False.
    An expired record for the same key is replaced.
    """
    now = timezone.now()
    try:
        with transaction.atomic():
            IdempotencyRecord.objects.filter(key=key, expires_at__lte=now).delete()
            IdempotencyRecord.objects.create(
                key=key,
                request_hash=request_hash,
                status_code=IN_PROGRESS,
                expires_at=now + ttl(),
            )
    except IntegrityError:
        return False
    return True


def release_key(key):
    IdempotencyRecord.objects.filter(key=key, status_code=IN_PROGRESS).delete()


def store_response(key, request_hash, response):
    with transaction.atomic():
        IdempotencyRecord.objects.update_or_create(
            key=key,
            defaults={
                "request_hash": request_hash,
                "response_body": response.content.decode("utf-8"),
                "status_code": response.status_code,
                "expires_at": timezone.now() + ttl(),
            },
        )


def delete_expired_records() -> int:
    deleted, _ = IdempotencyRecord.objects.filter(expires_at__lte=timezone.now()).delete()
    return deleted


def _recorded_response(record, request_hash):
    if record.request_hash != request_hash:
        return ledger_error_response(IdempotencyError("Idempotency key reused with different request"))
    if record.status_code == IN_PROGRESS:
        return ledger_error_response(
            IdempotencyError("A request with this idempotency key is still being processed")
        )
    replay = HttpResponse(record.response_body, status=record.status_code, content_type="application/json")
    replay[REPLAYED_HEADER] = "true"
    return replay


def idempotent(view_func):
    """Require an Idempotency-Key on POST and replay stored responses."""

    @functools.wraps(view_func)
    def wrapper(request, *args, **kwargs):
        if request.method != "POST":
            return view_func(request, *args, **kwargs)

        key = request.headers.get(IDEMPOTENCY_HEADER, "").strip()
        if not key:
            return ledger_error_response(
                ValidationError(f"{IDEMPOTENCY_HEADER} header is required for this operation")
            )
        if not is_valid_uuid(key):
            return ledger_error_response(ValidationError(f"{IDEMPOTENCY_HEADER} must be a valid UUID"))

        request_hash = request_fingerprint(request)
        existing = find_record(key)
        if existing is not None:
            return _recorded_response(existing, request_hash)

        if not reserve_key(key, request_hash):
            # another request claimed the key between the lookup and the insert
            existing = find_record(key)
            if existing is None:
                return ledger_error_response(
                    IdempotencyError("A request with this idempotency key is still being processed")
                )
            return _recorded_response(existing, request_hash)

        try:
            response = view_func(request, *args, **kwargs)
        except Exception:
            release_key(key)
            raise

        if response.status_code >= 500:
            # let a retry run the request again
            release_key(key)
            return response

        try:
            store_response(key, request_hash, response)
        except DatabaseError:
            logger.exception("Failed to store idempotency record for key %s", key)
        return response

    return wrapper
