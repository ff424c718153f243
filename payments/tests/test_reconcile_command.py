from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone

from orders.models import Order
from payments.exceptions import TransientError
from payments.models import Payment


class ReconcilePendingPaymentsTests(TestCase):
    def setUp(self):
        self.order = Order.objects.create(id="O1", user_id="U1", total_amount=Decimal("500.00"))
        self.payment = Payment.objects.create(order=self.order, provider_transaction_id="TXN_1", amount=Decimal("500.00"))

    def age(self, minutes):
        Payment.objects.filter(pk=self.payment.pk).update(created_at=timezone.now() - timedelta(minutes=minutes))

    def run_command(self, *args):
        out = StringIO()
        call_command("reconcile_pending_payments", "--sleep", "0", *args, stdout=out)
        return out.getvalue()

    def test_nothing_to_do(self):
        self.assertIn("No pending payments to reconcile.", self.run_command())

    def test_recent_payments_are_left_alone(self):
        self.age(1)
        self.assertIn("No pending payments to reconcile.", self.run_command())
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.PENDING)

    def test_settles_stale_payment(self):
        self.age(30)
        out = self.run_command()
        self.assertIn("TXN_1 -> SUCCESS", out)
        self.assertIn("Checked 1, settled 1 payments.", out)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.PAID)

    def test_errors_are_reported_and_skipped(self):
        self.age(30)
        with mock.patch(
            "payments.management.commands.reconcile_pending_payments.PaymentVerificationService.verify",
            side_effect=TransientError("Gateway error 503."),
        ):
            out = self.run_command()
        self.assertIn("TXN_1: Gateway error 503.", out)
        self.assertIn("Checked 1, settled 0 payments.", out)
