"""Payment initiation and verification.

A Payment row is always persisted before the gateway hears about it, and
every status change is a compare-and-set from ``pending`` so duplicate or
concurrent verifications never move a row twice.
"""
import logging
import time
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from django.db import DatabaseError, transaction

from orders.models import Order

from .exceptions import (
    ConflictError, GatewayError, NotFoundError, PersistenceError, TransientError, ValidationError,
)
from .integrations.phonepe import (
    FAILED, PENDING, SUCCESS, GatewayConfig, InitiationRequest, PhonePeClient, default_token_cache,
)
from .models import Payment
from .utils import gen_transaction_id, parse_amount, to_minor_units

logger = logging.getLogger(__name__)

PROVIDER = "phonepe"
COMMIT_RETRIES = 3
COMMIT_RETRY_DELAY = 0.2


@dataclass
class InitiationResult:
    redirect_url: str
    transaction_id: str


@dataclass
class VerificationResult:
    success: bool
    status: str
    message: str = ""
    details: dict = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {"success": self.success, "status": self.status, "message": self.message}


def _failure_reason(raw) -> str:
    raw = raw if isinstance(raw, dict) else {}
    inner = raw.get("data") if isinstance(raw.get("data"), dict) else {}
    code = raw.get("code") or inner.get("responseCode") or raw.get("state") or inner.get("state")
    message = raw.get("message") or inner.get("errorCode") or ""
    if code and message:
        return f"{message} ({code})"
    return message or (f"Payment failed at gateway ({code})" if code else "Payment failed at gateway")


class _GatewayBacked:
    def __init__(self, client: PhonePeClient = None, config: GatewayConfig = None):
        self.config = config or (client.config if client else GatewayConfig.from_settings())
        self._client = client

    @property
    def client(self) -> PhonePeClient:
        if self._client is None:
            self._client = PhonePeClient(self.config, token_cache=default_token_cache)
        return self._client


class PaymentVerificationService(_GatewayBacked):
    def __init__(self, client=None, config=None, sleep=time.sleep, clock=time.monotonic):
        super().__init__(client=client, config=config)
        self.sleep = sleep
        self.clock = clock

    # -- entry points --
    def verify(self, transaction_id: str, cancel_order_on_failure: bool = False) -> VerificationResult:
        payment = self._lookup(transaction_id)
        if payment.is_terminal:
            return self._existing(payment)
        if self.config.is_sandbox:
            logger.info("Sandbox mode - simulating successful payment %s", payment.provider_transaction_id)
            return self._commit_success(payment, {"sandbox": True}, "Payment verified successfully (sandbox mode)")
        return self._poll(payment, cancel_order_on_failure)

    def refresh(self, transaction_id: str) -> VerificationResult:
        """One status check. Definitive answers are committed; PENDING is returned as-is.

        TransientError propagates so callers can decide whether to retry.
        """
        payment = self._lookup(transaction_id)
        if payment.is_terminal:
            return self._existing(payment)
        if self.config.is_sandbox:
            return self._commit_success(payment, {"sandbox": True}, "Payment verified successfully (sandbox mode)")
        try:
            result = self._query(payment)
        except GatewayError as e:
            return self._commit_failure(payment, str(e), e.body)
        if result.status == SUCCESS:
            return self._commit_success(payment, result.raw)
        if result.status == FAILED:
            return self._commit_failure(payment, _failure_reason(result.raw), result.raw)
        return VerificationResult(False, PENDING, "Payment is still pending", self._details(payment))

    # -- states --
    def _lookup(self, transaction_id) -> Payment:
        transaction_id = (transaction_id or "").strip()
        if not transaction_id:
            raise ValidationError("Transaction ID is required")
        payment = Payment.objects.by_transaction(transaction_id)
        if payment is None:
            logger.warning("Payment not found for transaction %s", transaction_id)
            raise NotFoundError("Payment not found")
        return payment

    def _poll(self, payment: Payment, cancel_order: bool) -> VerificationResult:
        cfg = self.config
        max_attempts = max(int(cfg.verify_max_attempts), 1)
        started = self.clock()
        reason, raw = "Payment verification failed", None
        attempt = 0
        while True:
            attempt += 1
            try:
                result = self._query(payment)
            except TransientError as e:
                reason = str(e)
                logger.warning("Status check %s/%s for %s failed: %s",
                               attempt, max_attempts, payment.provider_transaction_id, e)
            except GatewayError as e:
                return self._commit_failure(payment, str(e), e.body, cancel_order)
            else:
                raw = result.raw
                if result.status == SUCCESS:
                    return self._commit_success(payment, raw)
                if result.status == FAILED:
                    return self._commit_failure(payment, _failure_reason(raw), raw, cancel_order)
                reason = f"Payment still {result.status.lower()} at gateway after {attempt} checks"

            if attempt >= max_attempts:
                break
            delay = self._delay(attempt)
            if self.clock() - started + delay > cfg.verify_max_elapsed:
                break
            self.sleep(delay)

        logger.warning("Giving up on %s after %s attempts: %s", payment.provider_transaction_id, attempt, reason)
        return self._commit_failure(payment, reason, raw, cancel_order)

    def _query(self, payment: Payment):
        # each checkout attempt is its own order at the gateway, keyed by the transaction id
        txn = payment.provider_transaction_id
        return self.client.query_status(txn, merchant_order_id=txn)

    def _delay(self, attempt: int) -> float:
        return min(self.config.verify_base_delay * (2 ** (attempt - 1)), self.config.verify_max_delay)

    def _commit_success(self, payment: Payment, raw, message="Payment verified successfully") -> VerificationResult:
        for attempt in range(1, COMMIT_RETRIES + 1):
            try:
                with transaction.atomic():
                    moved = Payment.objects.transition(payment.pk, Payment.PENDING, Payment.SUCCESS, gateway_payload=raw)
                    current = Payment.objects.get(pk=payment.pk)
                    if current.status != Payment.SUCCESS:
                        # a concurrent verification already failed it
                        break
                    if Order.objects.transition(payment.order_id, Order.PENDING, Order.PAID):
                        logger.info("Order %s marked paid by %s", payment.order_id, payment.provider_transaction_id)
                    elif not moved:
                        logger.debug("Order %s already settled", payment.order_id)
                return VerificationResult(True, SUCCESS, message, self._details(current))
            except DatabaseError as e:
                logger.warning("Commit of %s failed (attempt %s/%s): %s",
                               payment.provider_transaction_id, attempt, COMMIT_RETRIES, e)
                if attempt == COMMIT_RETRIES:
                    raise PersistenceError("Failed to update payment and order status") from e
                self.sleep(COMMIT_RETRY_DELAY * attempt)
        return self._existing(current)

    def _commit_failure(self, payment: Payment, reason, raw, cancel_order=False) -> VerificationResult:
        reason = (reason or "Payment failed")[:255]
        try:
            with transaction.atomic():
                moved = Payment.objects.transition(
                    payment.pk, Payment.PENDING, Payment.FAILED, failure_reason=reason, gateway_payload=raw,
                )
                if moved and cancel_order:
                    Order.objects.transition(payment.order_id, Order.PENDING, Order.CANCELLED)
        except DatabaseError as e:
            logger.exception("Failed to mark %s failed", payment.provider_transaction_id)
            raise PersistenceError("Failed to update payment status") from e
        if not moved:
            return self._existing(Payment.objects.get(pk=payment.pk))
        logger.info("Payment %s failed: %s", payment.provider_transaction_id, reason)
        return VerificationResult(False, FAILED, reason, self._details(payment))

    def _existing(self, payment: Payment) -> VerificationResult:
        if payment.status == Payment.SUCCESS:
            # re-applies the order pairing if something left it behind
            return self._commit_success(payment, None, "Payment already verified")
        if payment.status == Payment.FAILED:
            return VerificationResult(False, FAILED, payment.failure_reason or "Payment failed", self._details(payment))
        return VerificationResult(False, PENDING, "Payment is still pending", self._details(payment))

    @staticmethod
    def _details(payment: Payment) -> dict:
        return {"transactionId": payment.provider_transaction_id, "orderId": payment.order_id}


class PaymentInitiationService(_GatewayBacked):
    def __init__(self, client=None, config=None, verifier: PaymentVerificationService = None):
        super().__init__(client=client, config=config)
        self.verifier = verifier or PaymentVerificationService(client=client, config=self.config)

    def create_payment(self, order_id, amount, phone, redirect_base_url) -> InitiationResult:
        order_id = str(order_id or "").strip()
        phone = str(phone or "").strip()
        redirect_base_url = str(redirect_base_url or "").strip()
        missing = [name for name, value in (
            ("orderId", order_id), ("amount", amount), ("phone", phone), ("callbackUrl", redirect_base_url),
        ) if value in (None, "")]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        amount = parse_amount(amount)
        base_url = self._callback_base(redirect_base_url)
        self.config.validate()

        order = Order.objects.filter(pk=order_id).first()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if order.status != Order.PENDING:
            raise ValidationError(f"Order {order_id} is {order.status}, not pending")
        if amount != order.total_amount:
            raise ValidationError("Amount does not match order total")

        self._release_stale_pending(order)

        transaction_id = gen_transaction_id()
        try:
            with transaction.atomic():
                payment = Payment.objects.create(
                    order=order,
                    provider=PROVIDER,
                    provider_transaction_id=transaction_id,
                    amount=amount,
                    phone=phone,
                )
        except DatabaseError as e:
            logger.exception("Failed to create payment record for order %s", order.pk)
            raise PersistenceError("Failed to create payment record") from e
        logger.info("Payment %s created for order %s (%s)", transaction_id, order.pk, amount)

        if self.config.is_sandbox:
            logger.info("Test mode - returning mock payment URL for %s", transaction_id)
            return InitiationResult(
                redirect_url=f"{base_url}/payment/success?transactionId={transaction_id}&status=SUCCESS",
                transaction_id=transaction_id,
            )

        request = InitiationRequest(
            transaction_id=transaction_id,
            merchant_order_id=transaction_id,
            order_id=order.pk,
            amount=to_minor_units(amount),
            redirect_url=f"{base_url}/payment/success?transactionId={transaction_id}",
            phone=phone,
            callback_url=self.config.callback_url,
        )
        try:
            result = self.client.initiate_payment(request)
        except GatewayError as e:
            # row stays pending; verification or the reconcile sweep settles it
            Payment.objects.filter(pk=payment.pk).update(gateway_payload={"status": e.status, "body": e.body})
            raise
        Payment.objects.filter(pk=payment.pk).update(gateway_payload=result.raw)
        return InitiationResult(redirect_url=result.redirect_url, transaction_id=transaction_id)

    def _callback_base(self, url: str) -> str:
        parts = urlsplit(url)
        allowed = ("https", "http") if self.config.is_sandbox else ("https",)
        if parts.scheme not in allowed or not parts.netloc:
            raise ValidationError("callbackUrl must be an https origin")
        return f"{parts.scheme}://{parts.netloc}{parts.path}".rstrip("/")

    def _release_stale_pending(self, order: Order) -> None:
        stale = Payment.objects.pending().filter(order=order).first()
        if stale is None:
            return
        txn = stale.provider_transaction_id
        if self.config.is_sandbox:
            Payment.objects.transition(stale.pk, Payment.PENDING, Payment.FAILED,
                                       failure_reason="Superseded by a new checkout attempt")
            logger.info("Sandbox: superseded pending payment %s", txn)
            return
        try:
            result = self.verifier.refresh(txn)
        except TransientError:
            raise ConflictError("A previous payment for this order is still being confirmed", txn)
        if result.status == SUCCESS:
            raise ConflictError("Order has already been paid", txn)
        if result.status == PENDING:
            raise ConflictError("A previous payment for this order is still in progress", txn)
        logger.info("Previous payment %s settled as %s, starting a new one", txn, result.status)
