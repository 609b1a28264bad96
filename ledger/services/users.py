import logging

from django.db import IntegrityError, transaction

from ledger.errors import AlreadyExistsError, NotFoundError
from ledger.models import Participant
from ledger.services.lookups import paginate, resolve_user, storage_errors
from ledger.utils.validation import validate_email, validate_name


logger = logging.getLogger(__name__)


def create_user(name, email) -> Participant:
    """Register a participant. Emails are unique, compared case-insensitively."""
    name = validate_name(name)
    email = validate_email(email)

    if Participant.objects.filter(email__iexact=email).exists():
        raise AlreadyExistsError("User")

    with storage_errors("creating user"):
        try:
            with transaction.atomic():
                user = Participant.objects.create(name=name, email=email)
        except IntegrityError:
            # lost a race with a concurrent insert of the same email
            raise AlreadyExistsError("User")

    logger.info("Created user %s (%s)", user.uuid, user.email)
    return user


def get_user(user_uuid) -> Participant:
    return resolve_user(user_uuid)


def get_user_by_email(email) -> Participant:
    email = validate_email(email)
    try:
        return Participant.objects.get(email__iexact=email)
    except Participant.DoesNotExist:
        raise NotFoundError("User")


def list_users(page=1, limit=None):
    return paginate(Participant.objects.order_by("-created_at", "-id"), page, limit)
