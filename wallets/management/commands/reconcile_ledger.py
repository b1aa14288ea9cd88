from django.core.exceptions import ValidationError
from django.core.management.base import BaseCommand, CommandError

from wallets.models import Wallet
from wallets.services import LedgerService


class Command(BaseCommand):
    help = "Verifies that wallet balances match their transaction ledgers"

    def add_arguments(self, parser):
        parser.add_argument(
            "--user",
            dest="user_id",
            help="Only reconcile the wallet of this user id.",
        )

    def handle(self, *args, **options):
        if options["user_id"]:
            user_ids = [options["user_id"]]
        else:
            user_ids = Wallet.objects.values_list("user_id", flat=True)

        mismatches = 0
        checked = 0
        for user_id in user_ids:
            try:
                report = LedgerService.reconcile(user_id)
            except (Wallet.DoesNotExist, ValidationError):
                raise CommandError(f"Wallet {user_id} does not exist.")

            checked += 1
            if report.is_consistent:
                continue

            mismatches += 1
            self.stdout.write(
                self.style.ERROR(
                    f"Mismatch for {report.user_id}: balance={report.balance} "
                    f"ledger={report.ledger_total}"
                )
            )

        if mismatches:
            raise CommandError(f"{mismatches} of {checked} wallet(s) out of balance.")
        self.stdout.write(self.style.SUCCESS(f"{checked} wallet(s) reconciled."))
