import base64
import hashlib
import json
from decimal import Decimal
from unittest import mock

from django.conf import settings
from django.test import TestCase, override_settings
from django.urls import reverse

from orders.models import Order
from payments.exceptions import NotFoundError, TransientError
from payments.models import Payment
from payments.services import VerificationResult

PRODUCTION = {
    **settings.PHONEPE,
    "ENV": "production",
    "MERCHANT_ID": "M123",
    "SALT_KEY": "salt-abc",
    "SALT_INDEX": "1",
    "CLIENT_ID": "client-1",
    "CLIENT_SECRET": "secret-1",
}


def sign(message, salt="salt-abc"):
    return hashlib.sha256((message + salt).encode()).hexdigest() + "###1"


class WebhookTestCase(TestCase):
    def setUp(self):
        order = Order.objects.create(id="O1", user_id="U1", total_amount=Decimal("500.00"))
        self.payment = Payment.objects.create(order=order, provider_transaction_id="TXN_1", amount=Decimal("500.00"))

    def post(self, body, **headers):
        raw = body if isinstance(body, str) else json.dumps(body)
        return self.client.post(reverse("payments:webhook"), data=raw, content_type="application/json", **headers)


class SandboxWebhookTests(WebhookTestCase):
    def test_settles_payment(self):
        res = self.post({"transactionId": "TXN_1", "status": "FAILED"})
        self.assertEqual(res.status_code, 200)
        # body status is ignored, the payment is re-checked
        self.assertEqual(res.json()["status"], "SUCCESS")
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.SUCCESS)

    def test_invalid_json(self):
        self.assertEqual(self.post("nope").status_code, 400)

    def test_missing_transaction(self):
        self.assertEqual(self.post({"event": "checkout.order.completed"}).status_code, 400)

    def test_unknown_transaction_is_acknowledged(self):
        self.assertEqual(self.post({"transactionId": "TXN_X"}).status_code, 202)


@override_settings(PHONEPE=PRODUCTION)
class ProductionWebhookTests(WebhookTestCase):
    def test_missing_signature(self):
        res = self.post({"transactionId": "TXN_1"})
        self.assertEqual(res.status_code, 401)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.PENDING)

    def test_bad_signature(self):
        raw = json.dumps({"transactionId": "TXN_1"})
        res = self.post(raw, HTTP_X_VERIFY=sign(raw, salt="wrong"))
        self.assertEqual(res.status_code, 401)

    @mock.patch("payments.webhook.PaymentVerificationService.refresh")
    def test_signed_body(self, refresh):
        refresh.return_value = VerificationResult(True, "SUCCESS")
        raw = json.dumps({"transactionId": "TXN_1"})
        res = self.post(raw, HTTP_X_VERIFY=sign(raw))
        self.assertEqual(res.status_code, 200)
        refresh.assert_called_once_with("TXN_1")

    @mock.patch("payments.webhook.PaymentVerificationService.refresh")
    def test_signed_response_envelope(self, refresh):
        refresh.return_value = VerificationResult(False, "PENDING")
        encoded = base64.b64encode(json.dumps({
            "success": True, "code": "PAYMENT_SUCCESS", "data": {"merchantTransactionId": "TXN_1"},
        }).encode()).decode()
        res = self.post({"response": encoded}, HTTP_X_VERIFY=sign(encoded))
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["status"], "PENDING")
        refresh.assert_called_once_with("TXN_1")

    @mock.patch("payments.webhook.PaymentVerificationService.refresh")
    def test_v2_event_uses_udf1(self, refresh):
        refresh.return_value = VerificationResult(True, "SUCCESS")
        raw = json.dumps({"event": "checkout.order.completed", "payload": {"metaInfo": {"udf1": "TXN_1"}}})
        self.post(raw, HTTP_X_VERIFY=sign(raw))
        refresh.assert_called_once_with("TXN_1")

    @mock.patch("payments.webhook.PaymentVerificationService.refresh")
    def test_v2_event_uses_merchant_order_id(self, refresh):
        refresh.return_value = VerificationResult(True, "SUCCESS")
        raw = json.dumps({"event": "checkout.order.completed", "payload": {"merchantOrderId": "TXN_1"}})
        self.post(raw, HTTP_X_VERIFY=sign(raw))
        refresh.assert_called_once_with("TXN_1")

    @mock.patch("payments.webhook.PaymentVerificationService.refresh", side_effect=TransientError("Gateway error 503."))
    def test_gateway_outage_asks_for_redelivery(self, refresh):
        raw = json.dumps({"transactionId": "TXN_1"})
        self.assertEqual(self.post(raw, HTTP_X_VERIFY=sign(raw)).status_code, 503)

    @mock.patch("payments.webhook.PaymentVerificationService.refresh", side_effect=NotFoundError("Payment not found"))
    def test_unknown_transaction(self, refresh):
        raw = json.dumps({"transactionId": "TXN_X"})
        self.assertEqual(self.post(raw, HTTP_X_VERIFY=sign(raw)).status_code, 202)
