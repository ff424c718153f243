"""PhonePe gateway client.

Two generations of endpoints are live at the same time:

* current ("checkout v2"): OAuth2 client-credentials bearer token, plain JSON.
* legacy ("pg v1"): base64 JSON body signed with the X-VERIFY checksum.

Every operation is an ordered list of strategies. A strategy that answers
404 (endpoint not found) hands over to the next one; anything else is final.
The bearer strategies are only tried when OAuth client credentials are
configured, so a merchant id + salt setup goes straight to the legacy ones.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional
from urllib.parse import quote

import jwt
import requests
from django.conf import settings

from ..exceptions import AuthError, ConfigurationError, GatewayError, TransientError
from ..utils import encode_payload, mask, x_verify

logger = logging.getLogger(__name__)

SUCCESS = "SUCCESS"
FAILED = "FAILED"
PENDING = "PENDING"
UNKNOWN = "UNKNOWN"

PRODUCTION_BASE_URL = "https://api.phonepe.com/apis/pg"
PRODUCTION_LEGACY_BASE_URL = "https://api.phonepe.com/apis/hermes"
PRODUCTION_AUTH_URL = "https://api.phonepe.com/apis/identity-manager/v1/oauth/token"
SANDBOX_BASE_URL = "https://api-preprod.phonepe.com/apis/pg-sandbox"

# Public UAT credentials from the gateway docs; never valid in production.
UAT_MERCHANT_ID = "PGTESTPAYUAT"
UAT_SALT_KEY = "099eb0cd-02cf-4e2a-8aca-3e6c6aff0399"

MIN_SAFETY_MARGIN = 5.0
PAY_PATH = "/checkout/v2/pay"
LEGACY_PAY_PATH = "/pg/v1/pay"

COMMON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}


# ---------- Configuration ----------
@dataclass(frozen=True)
class GatewayConfig:
    env: str = "sandbox"
    merchant_id: str = ""
    salt_key: str = ""
    salt_index: str = "1"
    client_id: str = ""
    client_secret: str = ""
    client_version: str = "1"
    base_url: str = ""
    legacy_base_url: str = ""
    auth_url: str = ""
    status_path: str = "/checkout/v2/order/{merchant_order_id}/status"
    legacy_status_path: str = "/pg/v1/status/{merchant_id}/{transaction_id}"
    callback_url: str = ""
    timeout: float = 15.0
    token_safety_margin: float = 30.0
    default_token_ttl: float = 900.0
    verify_max_attempts: int = 6
    verify_base_delay: float = 1.0
    verify_max_delay: float = 8.0
    verify_max_elapsed: float = 45.0

    @classmethod
    def from_settings(cls) -> "GatewayConfig":
        raw = getattr(settings, "PHONEPE", {}) or {}
        keys = {
            "ENV": "env", "MERCHANT_ID": "merchant_id", "SALT_KEY": "salt_key",
            "SALT_INDEX": "salt_index", "CLIENT_ID": "client_id",
            "CLIENT_SECRET": "client_secret", "CLIENT_VERSION": "client_version",
            "BASE_URL": "base_url", "LEGACY_BASE_URL": "legacy_base_url",
            "AUTH_URL": "auth_url", "STATUS_PATH": "status_path",
            "LEGACY_STATUS_PATH": "legacy_status_path", "CALLBACK_URL": "callback_url",
            "TIMEOUT": "timeout", "TOKEN_SAFETY_MARGIN": "token_safety_margin",
            "DEFAULT_TOKEN_TTL": "default_token_ttl",
            "VERIFY_MAX_ATTEMPTS": "verify_max_attempts",
            "VERIFY_BASE_DELAY": "verify_base_delay",
            "VERIFY_MAX_DELAY": "verify_max_delay",
            "VERIFY_MAX_ELAPSED": "verify_max_elapsed",
        }
        kwargs = {attr: raw[key] for key, attr in keys.items() if raw.get(key) not in (None, "")}
        return cls(**kwargs)

    @property
    def is_sandbox(self) -> bool:
        return (self.env or "").lower() != "production"

    @property
    def api_base_url(self) -> str:
        default = SANDBOX_BASE_URL if self.is_sandbox else PRODUCTION_BASE_URL
        return (self.base_url or default).rstrip("/")

    @property
    def legacy_api_base_url(self) -> str:
        default = SANDBOX_BASE_URL if self.is_sandbox else PRODUCTION_LEGACY_BASE_URL
        return (self.legacy_base_url or default).rstrip("/")

    @property
    def has_client_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def has_legacy_credentials(self) -> bool:
        return bool(self.merchant_id and self.salt_key)

    def auth_candidates(self) -> list:
        """Token endpoints in priority order; the provider has moved them over time."""
        candidates = [self.auth_url, PRODUCTION_AUTH_URL if not self.is_sandbox else "",
                      f"{self.api_base_url}/v1/oauth/token"]
        seen, ordered = set(), []
        for url in candidates:
            if url and url not in seen:
                seen.add(url)
                ordered.append(url)
        return ordered

    def validate(self) -> None:
        if self.is_sandbox:
            return
        if not (self.has_legacy_credentials or self.has_client_credentials):
            raise ConfigurationError("Production PhonePe credentials not configured")
        if self.merchant_id == UAT_MERCHANT_ID or self.salt_key == UAT_SALT_KEY:
            raise ConfigurationError("Cannot use test credentials in production mode")


# ---------- Token cache ----------
@dataclass(frozen=True)
class Token:
    access_token: str
    expires_at: float
    token_type: str = "O-Bearer"

    def header(self) -> str:
        return f"{self.token_type} {self.access_token}"


class TokenCache:
    """Holds one bearer token. No lock: a stale read costs one extra fetch."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._token: Optional[Token] = None

    def get(self, safety_margin: float = MIN_SAFETY_MARGIN) -> Optional[Token]:
        token = self._token
        margin = max(safety_margin, MIN_SAFETY_MARGIN)
        if token and self.clock() < token.expires_at - margin:
            return token
        return None

    def set(self, token: Token) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None


default_token_cache = TokenCache()


# ---------- Results ----------
@dataclass
class GatewayAttempt:
    strategy: str
    url: str
    status_code: Optional[int]
    outcome: str


@dataclass
class InitiationRequest:
    transaction_id: str
    merchant_order_id: str
    amount: int  # minor units
    redirect_url: str
    phone: str = ""
    callback_url: str = ""
    order_id: str = ""


@dataclass
class GatewayInitiationResult:
    redirect_url: str
    transaction_id: str
    endpoint: str
    raw: dict = field(default_factory=dict)
    attempts: list = field(default_factory=list)


@dataclass
class GatewayStatusResult:
    status: str
    raw: dict
    endpoint: str
    attempts: list = field(default_factory=list)


@dataclass(frozen=True)
class Strategy:
    name: str
    base_url: str
    path: str
    build: Callable[[], dict]
    sign: Callable[[str, dict], dict]
    bearer: bool = False


# ---------- Status normalisation ----------
SUCCESS_TOKENS = frozenset({
    "COMPLETED", "SUCCESS", "SUCCESSFUL", "PAYMENT_SUCCESS", "CHARGED", "PAID",
    "CAPTURED", "CHECKOUT_ORDER_COMPLETED", "PG_ORDER_COMPLETED",
})
FAILURE_TOKENS = frozenset({
    "FAILED", "FAILURE", "PAYMENT_ERROR", "PAYMENT_FAILED", "PAYMENT_DECLINED",
    "DECLINED", "CANCELLED", "TIMED_OUT", "EXPIRED", "AUTHORIZATION_FAILED",
    "CHECKOUT_ORDER_FAILED", "PG_ORDER_FAILED",
})
PENDING_TOKENS = frozenset({
    "PENDING", "PAYMENT_PENDING", "INITIATED", "PAYMENT_INITIATED", "PROCESSING",
    "CREATED", "AUTHORIZED",
})

# Where the various response generations put their status, most specific first.
STATUS_PATHS = (
    ("state",),
    ("status",),
    ("code",),
    ("event",),
    ("data", "state"),
    ("data", "status"),
    ("data", "responseCode"),
    ("data", "code"),
    ("payload", "state"),
)


def _dig(raw, path):
    node = raw
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def _token(value) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().upper().replace(".", "_").replace(" ", "_")


def classify(raw) -> str:
    """Normalise any known status response shape to SUCCESS/FAILED/PENDING/UNKNOWN."""
    if not isinstance(raw, dict):
        return UNKNOWN
    tokens = {_token(_dig(raw, path)) for path in STATUS_PATHS} - {""}
    if tokens & SUCCESS_TOKENS:
        return SUCCESS
    if tokens & FAILURE_TOKENS:
        return FAILED
    if tokens & PENDING_TOKENS:
        return PENDING
    if not tokens and raw.get("success") is True:
        return SUCCESS
    return UNKNOWN


def _json(resp) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {"raw": (resp.text or "")[:800]}
    return data if isinstance(data, dict) else {"raw": data}


def _redirect_url(data: dict) -> str:
    inner = data.get("data") if isinstance(data.get("data"), dict) else {}
    instrument = inner.get("instrumentResponse") or {}
    return (
        data.get("redirectUrl")
        or inner.get("redirectUrl")
        or (instrument.get("redirectInfo") or {}).get("url")
        or ""
    )


# ---------- Client ----------
class PhonePeClient:
    def __init__(self, config: GatewayConfig, token_cache: TokenCache = None, session=None):
        self.config = config
        self.token_cache = token_cache if token_cache is not None else default_token_cache
        self.session = session or requests.Session()

    # -- auth --
    def acquire_token(self) -> Token:
        cached = self.token_cache.get(self.config.token_safety_margin)
        if cached:
            return cached
        if not self.config.has_client_credentials:
            raise AuthError("Missing PHONEPE_CLIENT_ID / PHONEPE_CLIENT_SECRET")

        form = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "client_version": self.config.client_version,
            "grant_type": "client_credentials",
        }
        headers = {"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"}
        errors = []
        for url in self.config.auth_candidates():
            try:
                resp = self.session.post(url, data=form, headers=headers, timeout=self.config.timeout)
            except requests.RequestException as e:
                logger.warning("PhonePe token request to %s failed: %s", url, e)
                errors.append(f"{url}: {e}")
                continue
            data = _json(resp)
            access_token = data.get("access_token") if resp.status_code == 200 else None
            if not access_token:
                logger.warning("PhonePe token endpoint %s answered HTTP %s without a token", url, resp.status_code)
                errors.append(f"{url}: HTTP {resp.status_code}")
                continue
            token = Token(
                access_token=access_token,
                expires_at=self._expiry(data, access_token),
                token_type=data.get("token_type") or "O-Bearer",
            )
            self.token_cache.set(token)
            logger.info("PhonePe token acquired from %s (client_id=%s)", url, mask(self.config.client_id))
            return token
        raise AuthError("Could not obtain gateway token: " + "; ".join(errors))

    def _expiry(self, data: dict, access_token: str) -> float:
        now = self.token_cache.clock()
        expires_at = data.get("expires_at")
        if isinstance(expires_at, (int, float)) and expires_at > 0:
            return expires_at / 1000 if expires_at > 1e12 else float(expires_at)
        expires_in = data.get("expires_in")
        if isinstance(expires_in, (int, float)) and expires_in > 0:
            return now + expires_in
        try:
            claims = jwt.decode(access_token, options={"verify_signature": False})
        except jwt.PyJWTError:
            claims = {}
        if isinstance(claims.get("exp"), (int, float)):
            return float(claims["exp"])
        return now + self.config.default_token_ttl

    def _bearer(self, path: str, body: dict) -> dict:
        return {"Authorization": self.acquire_token().header()}

    def _legacy_signed(self, path: str, body: dict) -> dict:
        message = ((body.get("json") or {}).get("request") or "") + path
        return {
            "X-VERIFY": x_verify(message, self.config.salt_key, self.config.salt_index),
            "X-MERCHANT-ID": self.config.merchant_id,
        }

    # -- transport --
    def _send(self, method: str, strategy: Strategy, url: str, body: dict, attempts: list):
        headers = {**COMMON_HEADERS, **strategy.sign(strategy.path, body)}
        try:
            return self.session.request(method, url, headers=headers, timeout=self.config.timeout, **body)
        except requests.RequestException as e:
            attempts.append(GatewayAttempt(strategy.name, url, None, f"network error: {e}"))
            logger.warning("PhonePe %s %s failed: %s", strategy.name, url, e)
            raise TransientError(f"Gateway request failed: {e}") from e

    def _run(self, method: str, strategies: list, attempts: list):
        if not strategies:
            raise ConfigurationError("No PhonePe credentials configured")
        not_found = None
        for strategy in strategies:
            url = strategy.base_url + strategy.path
            body = strategy.build()
            resp = self._send(method, strategy, url, body, attempts)
            if resp.status_code in (401, 403) and strategy.bearer:
                # cached token revoked or expired early; one retry with a fresh one
                attempts.append(GatewayAttempt(strategy.name, url, resp.status_code, "token rejected"))
                logger.warning("PhonePe %s rejected the bearer token, fetching a new one", strategy.name)
                self.token_cache.clear()
                resp = self._send(method, strategy, url, body, attempts)

            data = _json(resp)
            code = resp.status_code
            if code == 404:
                attempts.append(GatewayAttempt(strategy.name, url, code, "endpoint not found"))
                logger.info("PhonePe %s answered 404, trying next endpoint", strategy.name)
                not_found = GatewayError(f"{strategy.name}: endpoint not found", status=code, body=data)
                continue
            if code in (401, 403):
                # says nothing about the payment itself
                attempts.append(GatewayAttempt(strategy.name, url, code, "unauthorized"))
                logger.error("PhonePe %s refused our credentials HTTP %s: %s", strategy.name, code, data)
                if strategy.bearer:
                    self.token_cache.clear()
                raise AuthError(f"{strategy.name} refused credentials (HTTP {code})")
            if code >= 500 or code in (408, 429):
                attempts.append(GatewayAttempt(strategy.name, url, code, "transient"))
                logger.warning("PhonePe %s transient HTTP %s: %s", strategy.name, code, data)
                raise TransientError(f"Gateway error {code}.")
            if code >= 400:
                attempts.append(GatewayAttempt(strategy.name, url, code, "rejected"))
                logger.error("PhonePe %s rejected request HTTP %s: %s", strategy.name, code, data)
                message = data.get("message") or data.get("code") or f"HTTP {code}"
                raise GatewayError(f"{strategy.name} failed: {message}", status=code, body=data)

            attempts.append(GatewayAttempt(strategy.name, url, code, "ok"))
            return strategy, data, code
        raise not_found

    # -- operations --
    def initiate_payment(self, request: InitiationRequest) -> GatewayInitiationResult:
        cfg = self.config
        order_ref = request.order_id or request.merchant_order_id

        def build_v2():
            return {"json": {
                "merchantOrderId": request.merchant_order_id,
                "amount": request.amount,
                "expireAfter": 1200,
                "metaInfo": {"udf1": request.transaction_id, "udf2": request.phone, "udf3": order_ref},
                "paymentFlow": {
                    "type": "PG_CHECKOUT",
                    "message": f"Payment for order {order_ref}",
                    "merchantUrls": {"redirectUrl": request.redirect_url},
                },
            }}

        def build_legacy():
            payload = {
                "merchantId": cfg.merchant_id,
                "merchantTransactionId": request.transaction_id,
                "merchantUserId": f"USER_{order_ref}",
                "amount": request.amount,
                "redirectUrl": request.redirect_url,
                "redirectMode": "REDIRECT",
                "callbackUrl": request.callback_url or request.redirect_url,
                "mobileNumber": request.phone,
                "paymentInstrument": {"type": "PAY_PAGE"},
            }
            return {"json": {"request": encode_payload(payload)}}

        strategies = []
        if cfg.has_client_credentials:
            strategies.append(Strategy("checkout-v2", cfg.api_base_url, PAY_PATH, build_v2, self._bearer, bearer=True))
        if cfg.has_legacy_credentials:
            strategies.append(Strategy("pay-v1", cfg.legacy_api_base_url, LEGACY_PAY_PATH, build_legacy, self._legacy_signed))

        attempts = []
        strategy, data, code = self._run("POST", strategies, attempts)
        redirect_url = _redirect_url(data)
        if data.get("success") is False or not redirect_url:
            message = data.get("message") or data.get("code") or "Redirect URL missing in response"
            logger.error("PhonePe %s gave no redirect for %s: %s", strategy.name, request.transaction_id, data)
            raise GatewayError(f"Payment creation failed: {message}", status=code, body=data)
        logger.info("PhonePe %s created checkout for %s", strategy.name, request.transaction_id)
        return GatewayInitiationResult(
            redirect_url=redirect_url,
            transaction_id=request.transaction_id,
            endpoint=strategy.name,
            raw=data,
            attempts=attempts,
        )

    def query_status(self, transaction_id: str, merchant_order_id: str = None) -> GatewayStatusResult:
        cfg = self.config
        strategies = []
        if merchant_order_id and cfg.has_client_credentials:
            path = cfg.status_path.format(merchant_order_id=quote(str(merchant_order_id), safe=""))
            strategies.append(Strategy("order-status-v2", cfg.api_base_url, path, dict, self._bearer, bearer=True))
        if cfg.has_legacy_credentials:
            path = cfg.legacy_status_path.format(
                merchant_id=quote(cfg.merchant_id, safe=""),
                transaction_id=quote(transaction_id, safe=""),
            )
            strategies.append(Strategy("status-v1", cfg.legacy_api_base_url, path, dict, self._legacy_signed))

        attempts = []
        strategy, data, _code = self._run("GET", strategies, attempts)
        status = classify(data)
        logger.info("PhonePe %s reports %s for %s", strategy.name, status, transaction_id)
        return GatewayStatusResult(status=status, raw=data, endpoint=strategy.name, attempts=attempts)


def get_client(session=None) -> PhonePeClient:
    return PhonePeClient(GatewayConfig.from_settings(), token_cache=default_token_cache, session=session)
