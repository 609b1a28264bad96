"""
Delete expired Idempotency-Key records.

Usage:
    python manage.py cleanup_idempotency_keys

Meant to run periodically (e.g. hourly from cron). Expired records are
already ignored by the API, so a missed run only costs disk space.
"""
from django.core.management.base import BaseCommand
from django.db import DatabaseError

from ledger.idempotency import delete_expired_records


class Command(BaseCommand):
    help = 'Delete expired idempotency records'

    def handle(self, *args, **options):
        try:
            deleted = delete_expired_records()
        except DatabaseError as e:
            self.stdout.write(self.style.ERROR(f'Failed to clean up idempotency records: {e}'))
            return

        self.stdout.write(self.style.SUCCESS(f'Deleted {deleted} expired idempotency record(s).'))
