"""
Check that balances in every group and currency sum to zero, and optionally
that each balance matches the expense and settlement history.

Usage:
    python manage.py verify_balances
    python manage.py verify_balances --history
"""
from django.core.management.base import BaseCommand, CommandError

from ledger.models import ExpenseGroup
from ledger.services.balances import balance_drift, zero_sum_violations


class Command(BaseCommand):
    help = 'Verify that group balances sum to zero'

    def add_arguments(self, parser):
        parser.add_argument(
            '--history',
            action='store_true',
            help='Also compare every balance with the value recomputed from history',
        )

    def handle(self, *args, **options):
        problems = 0

        violations = zero_sum_violations()
        names = dict(ExpenseGroup.objects.values_list('id', 'name'))
        for group_id, currency, total in violations:
            self.stdout.write(self.style.ERROR(
                f'Group "{names.get(group_id, group_id)}" {currency}: balances sum to {total}'
            ))
        problems += len(violations)

        if options['history']:
            for (group_id, participant_id, currency), stored, expected in balance_drift():
                self.stdout.write(self.style.ERROR(
                    f'Group "{names.get(group_id, group_id)}" participant {participant_id} {currency}: '
                    f'stored {stored}, expected {expected}'
                ))
                problems += 1

        if problems:
            raise CommandError(f'{problems} balance problem(s) found')

        self.stdout.write(self.style.SUCCESS('All balances are consistent.'))
