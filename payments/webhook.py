import base64
import binascii
import json
import logging

from django.http import HttpResponse, HttpResponseBadRequest, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from .exceptions import AuthError, ConfigurationError, NotFoundError, PersistenceError, TransientError
from .integrations.phonepe import GatewayConfig
from .services import PaymentVerificationService
from .utils import verify_x_verify

logger = logging.getLogger(__name__)


def _check_x_verify(request, raw_body: str, payload: dict, config: GatewayConfig) -> bool:
    header = request.headers.get("X-VERIFY", "")
    if not header:
        return False
    # Legacy callbacks sign the base64 "response" field, newer ones the raw body
    message = payload.get("response") if isinstance(payload.get("response"), str) else raw_body
    return verify_x_verify(message, header, config.salt_key)


def _unwrap(payload: dict) -> dict:
    encoded = payload.get("response")
    if not isinstance(encoded, str):
        return payload
    try:
        decoded = json.loads(base64.b64decode(encoded).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return payload
    return decoded if isinstance(decoded, dict) else payload


def _transaction_id(data: dict) -> str:
    inner = data.get("data") if isinstance(data.get("data"), dict) else {}
    event = data.get("payload") if isinstance(data.get("payload"), dict) else {}
    meta = event.get("metaInfo") if isinstance(event.get("metaInfo"), dict) else {}
    return str(
        data.get("transactionId")
        or data.get("merchantTransactionId")
        or inner.get("merchantTransactionId")
        or meta.get("udf1")
        or event.get("merchantOrderId")
        or ""
    ).strip()


@csrf_exempt
@require_POST
def phonepe_webhook(request):
    """Gateway server-to-server notification.

    The status in the body is not trusted: the callback only tells us which
    transaction to re-check against the gateway.
    """
    config = GatewayConfig.from_settings()
    try:
        raw_body = request.body.decode("utf-8")
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError):
        return HttpResponseBadRequest("Invalid JSON")
    if not isinstance(payload, dict):
        return HttpResponseBadRequest("Invalid JSON")

    if not config.is_sandbox and not _check_x_verify(request, raw_body, payload, config):
        logger.warning("Rejected webhook with missing or invalid X-VERIFY")
        return HttpResponse("Unauthorized", status=401)

    txn = _transaction_id(_unwrap(payload))
    if not txn:
        return HttpResponseBadRequest("transaction id missing")
    logger.info("Webhook received for %s", txn)

    try:
        result = PaymentVerificationService(config=config).refresh(txn)
    except NotFoundError:
        return HttpResponse("unknown transaction", status=202)
    except (TransientError, AuthError) as e:
        # non-2xx makes the gateway redeliver
        logger.warning("Webhook for %s deferred: %s", txn, e)
        return HttpResponse("retry later", status=503)
    except (PersistenceError, ConfigurationError):
        logger.exception("Webhook for %s could not be processed", txn)
        return HttpResponse("error", status=500)
    return JsonResponse({"success": True, "status": result.status})
