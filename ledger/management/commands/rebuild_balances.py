"""
Recompute every balance from expenses, splits and settlements.

Usage:
    python manage.py rebuild_balances --dry-run
    python manage.py rebuild_balances
"""
from django.core.management.base import BaseCommand

from ledger.services.balances import balance_drift, rebuild_balances


class Command(BaseCommand):
    help = 'Recompute balances from the expense and settlement history'

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Report differences without writing anything',
        )

    def handle(self, *args, **options):
        drift = balance_drift()
        for (group_id, participant_id, currency), stored, expected in drift:
            self.stdout.write(
                f'group {group_id} participant {participant_id} {currency}: {stored} -> {expected}'
            )

        if options['dry_run']:
            self.stdout.write(self.style.WARNING(f'Dry run: {len(drift)} balance(s) would change.'))
            return

        changed = rebuild_balances()
        self.stdout.write(self.style.SUCCESS(f'Rebuilt {changed} balance(s).'))
