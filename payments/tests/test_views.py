import json
from decimal import Decimal
from unittest import mock

from django.test import TestCase
from django.urls import reverse

from orders.models import Order
from payments.exceptions import TransientError
from payments.models import Payment
from payments.services import VerificationResult


class CreatePaymentViewTests(TestCase):
    def setUp(self):
        Order.objects.create(id="O1", user_id="U1", total_amount=Decimal("500.00"))

    def post(self, body):
        data = body if isinstance(body, str) else json.dumps(body)
        return self.client.post(reverse("payments:create"), data=data, content_type="application/json")

    def test_sandbox_checkout(self):
        res = self.post({"orderId": "O1", "amount": 500, "phone": "9876543210", "callbackUrl": "https://shop.test"})
        self.assertEqual(res.status_code, 200)
        data = res.json()
        self.assertTrue(data["success"])
        self.assertTrue(data["transactionId"].startswith("TXN_"))
        self.assertEqual(
            data["paymentUrl"],
            f"https://shop.test/payment/success?transactionId={data['transactionId']}&status=SUCCESS",
        )
        self.assertEqual(Payment.objects.get().status, Payment.PENDING)

    def test_invalid_json(self):
        res = self.post("{not json")
        self.assertEqual(res.status_code, 400)
        self.assertFalse(res.json()["success"])

    def test_missing_fields(self):
        res = self.post({"orderId": "O1", "amount": 500})
        self.assertEqual(res.status_code, 400)
        self.assertIn("phone", res.json()["error"])

    def test_unknown_order(self):
        res = self.post({"orderId": "NOPE", "amount": 500, "phone": "9876543210", "callbackUrl": "https://shop.test"})
        self.assertEqual(res.status_code, 404)
        self.assertEqual(Payment.objects.count(), 0)

    def test_get_not_allowed(self):
        self.assertEqual(self.client.get(reverse("payments:create")).status_code, 405)

    def test_gateway_outage_is_503(self):
        with mock.patch(
            "payments.views.PaymentInitiationService.create_payment",
            side_effect=TransientError("Gateway error 503."),
        ):
            res = self.post({"orderId": "O1", "amount": 500, "phone": "9876543210", "callbackUrl": "https://shop.test"})
        self.assertEqual(res.status_code, 503)
        self.assertEqual(res.json()["error"], "Gateway error 503.")


class VerifyPaymentViewTests(TestCase):
    def setUp(self):
        self.order = Order.objects.create(id="O1", user_id="U1", total_amount=Decimal("500.00"))
        Payment.objects.create(order=self.order, provider_transaction_id="TXN_1", amount=Decimal("500.00"))

    def test_get(self):
        res = self.client.get(reverse("payments:verify"), {"transactionId": "TXN_1"})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["status"], "SUCCESS")
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.PAID)

    def test_post_json_body(self):
        res = self.client.post(
            reverse("payments:verify"), data=json.dumps({"transactionId": "TXN_1"}), content_type="application/json",
        )
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.json()["success"])

    def test_legacy_parameter_name(self):
        res = self.client.get(reverse("payments:verify"), {"merchantTransactionId": "TXN_1"})
        self.assertEqual(res.json()["status"], "SUCCESS")

    def test_unknown_transaction(self):
        res = self.client.get(reverse("payments:verify"), {"transactionId": "TXN_X"})
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json(), {"success": False, "status": "FAILED", "error": "Payment not found"})

    def test_missing_transaction(self):
        res = self.client.get(reverse("payments:verify"))
        self.assertEqual(res.status_code, 400)


class ResultAndSummaryViewTests(TestCase):
    def setUp(self):
        self.order = Order.objects.create(
            id="O1", user_id="U1", total_amount=Decimal("500.00"), phone="9876543210", address="12 Potter's Lane",
        )
        Payment.objects.create(order=self.order, provider_transaction_id="TXN_1", amount=Decimal("500.00"))

    def test_result_redirects_to_storefront_success(self):
        res = self.client.get(reverse("payments:result"), {"transactionId": "TXN_1"})
        self.assertEqual(res.status_code, 302)
        self.assertEqual(res["Location"], "https://shop.test/payment/success?transactionId=TXN_1")

    def test_result_redirects_to_failure_for_unknown(self):
        res = self.client.get(reverse("payments:result"), {"transactionId": "TXN_X"})
        self.assertEqual(res.status_code, 302)
        self.assertTrue(res["Location"].startswith("https://shop.test/payment/failure?error="))

    def test_result_checks_once_and_never_polls(self):
        pending = VerificationResult(False, "PENDING", "Payment is still pending")
        with mock.patch("payments.views.PaymentVerificationService.refresh", return_value=pending) as refresh, \
                mock.patch("payments.views.PaymentVerificationService.verify") as verify:
            res = self.client.get(reverse("payments:result"), {"transactionId": "TXN_1"})

        refresh.assert_called_once_with("TXN_1")
        verify.assert_not_called()
        self.assertTrue(res["Location"].startswith("https://shop.test/payment/failure?error=Payment+is+still+being"))
        self.assertEqual(Payment.objects.get().status, Payment.PENDING)

    def test_summary(self):
        res = self.client.get(reverse("payments:summary", args=["TXN_1"]))
        data = res.json()
        self.assertEqual(data["status"], "pending")
        self.assertEqual(data["amount"], "500.00")
        self.assertEqual(data["order"]["id"], "O1")
        self.assertEqual(data["order"]["address"], "12 Potter's Lane")

    def test_summary_unknown(self):
        self.assertEqual(self.client.get(reverse("payments:summary", args=["TXN_X"])).status_code, 404)
