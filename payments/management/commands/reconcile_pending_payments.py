import time
from datetime import timedelta

from django.core.management.base import BaseCommand
from django.utils import timezone

from payments.exceptions import PaymentError
from payments.models import Payment
from payments.services import PaymentVerificationService


class Command(BaseCommand):
    help = "Verify stale PENDING payments against PhonePe and settle payment/order status"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=50)
        parser.add_argument("--sleep", type=float, default=0.5)
        parser.add_argument("--older-than-minutes", type=int, default=5)

    def handle(self, *args, **opts):
        cutoff = timezone.now() - timedelta(minutes=opts["older_than_minutes"])
        payments = list(
            Payment.objects.pending().filter(created_at__lt=cutoff).order_by("created_at")[:opts["max"]]
        )
        if not payments:
            self.stdout.write(self.style.SUCCESS("No pending payments to reconcile."))
            return

        service = PaymentVerificationService()
        settled = 0
        for p in payments:
            txn = p.provider_transaction_id
            try:
                result = service.verify(txn)
            except PaymentError as e:
                self.stdout.write(self.style.WARNING(f"{txn}: {e}"))
            else:
                settled += 1
                line = f"{txn} -> {result.status}"
                self.stdout.write(self.style.SUCCESS(line) if result.success else line)
            if opts["sleep"]:
                time.sleep(opts["sleep"])

        self.stdout.write(self.style.SUCCESS(f"Checked {len(payments)}, settled {settled} payments."))
