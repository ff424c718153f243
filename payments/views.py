import json
import logging
from urllib.parse import urlencode

from django.conf import settings
from django.http import HttpResponseRedirect, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from .exceptions import (
    AuthError, ConfigurationError, ConflictError, GatewayError, NotFoundError, PaymentError,
    PersistenceError, TransientError, ValidationError,
)
from .integrations.phonepe import PENDING
from .models import Payment
from .services import PaymentInitiationService, PaymentVerificationService

logger = logging.getLogger(__name__)

# most specific first
ERROR_STATUS = (
    (ConflictError, 409),
    (ValidationError, 400),
    (NotFoundError, 404),
    (PersistenceError, 500),
    (ConfigurationError, 500),
    (AuthError, 503),
    (TransientError, 503),
    (GatewayError, 502),
)


def _json_body(request):
    try:
        body = json.loads(request.body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, ValueError):
        return None
    return body if isinstance(body, dict) else None


def _status_for(exc: PaymentError) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 400


def _transaction_id(request) -> str:
    txn = request.GET.get("transactionId") or request.GET.get("merchantTransactionId") or ""
    if not txn and request.method == "POST":
        body = _json_body(request) or {}
        txn = body.get("transactionId") or body.get("merchantTransactionId") or ""
    return str(txn).strip()


@csrf_exempt
@require_POST
def create_payment_view(request):
    body = _json_body(request)
    if body is None:
        return JsonResponse({"success": False, "error": "Invalid JSON body"}, status=400)
    try:
        result = PaymentInitiationService().create_payment(
            order_id=body.get("orderId"),
            amount=body.get("amount"),
            phone=body.get("phone"),
            redirect_base_url=body.get("callbackUrl"),
        )
    except PaymentError as e:
        logger.warning("Payment creation for order %s failed: %s", body.get("orderId"), e)
        data = {"success": False, "error": str(e) or "Payment creation failed"}
        if isinstance(e, ConflictError) and e.transaction_id:
            data["transactionId"] = e.transaction_id
        return JsonResponse(data, status=_status_for(e))
    return JsonResponse({
        "success": True,
        "paymentUrl": result.redirect_url,
        "transactionId": result.transaction_id,
    })


@csrf_exempt
@require_http_methods(["GET", "POST"])
def verify_payment_view(request):
    txn = _transaction_id(request)
    try:
        result = PaymentVerificationService().verify(txn)
    except PaymentError as e:
        logger.warning("Payment verification for %s failed: %s", txn or "-", e)
        return JsonResponse(
            {"success": False, "status": "FAILED", "error": str(e) or "Payment verification failed"},
            status=_status_for(e),
        )
    return JsonResponse(result.as_dict())


@require_GET
def payment_result_view(request):
    """Landing target after the gateway: one status check, then send the shopper to the storefront view.

    Never polls; a payment still pending here is settled by the webhook or the reconcile sweep.
    """
    txn = _transaction_id(request)
    storefront = getattr(settings, "STOREFRONT_URL", "").rstrip("/")
    try:
        result = PaymentVerificationService().refresh(txn)
    except PaymentError as e:
        message = str(e) or "Verification failed"
    else:
        if result.success:
            query = urlencode({"transactionId": txn})
            return HttpResponseRedirect(f"{storefront}/payment/success?{query}")
        if result.status == PENDING:
            message = "Payment is still being confirmed. Your order will update once PhonePe confirms it."
        else:
            message = result.message or "Payment failed or was cancelled"
    return HttpResponseRedirect(f"{storefront}/payment/failure?{urlencode({'error': message})}")


@require_GET
def payment_summary_view(request, transaction_id: str):
    payment = Payment.objects.by_transaction(transaction_id)
    if payment is None:
        return JsonResponse({"success": False, "error": "Payment not found"}, status=404)
    order = payment.order
    return JsonResponse({
        "success": True,
        "transactionId": payment.provider_transaction_id,
        "status": payment.status,
        "amount": str(payment.amount),
        "createdAt": payment.created_at.isoformat(),
        "order": {
            "id": order.pk,
            "status": order.status,
            "totalAmount": str(order.total_amount),
            "phone": order.phone,
            "address": order.address,
            "createdAt": order.created_at.isoformat(),
        },
    })
