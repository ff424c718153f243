import json

from payments.integrations.phonepe import GatewayConfig

TOKEN_URL = "https://auth.test/v1/oauth/token"
PAY_V2_URL = "https://pg.test/checkout/v2/pay"
PAY_V1_URL = "https://legacy.test/pg/v1/pay"


def status_v2_url(order_id):
    return f"https://pg.test/checkout/v2/order/{order_id}/status"


def status_v1_url(transaction_id, merchant_id="M123"):
    return f"https://legacy.test/pg/v1/status/{merchant_id}/{transaction_id}"


def production_config(**overrides):
    values = dict(
        env="production",
        merchant_id="M123",
        salt_key="salt-abc",
        salt_index="1",
        client_id="client-1",
        client_secret="secret-1",
        base_url="https://pg.test",
        legacy_base_url="https://legacy.test",
        auth_url=TOKEN_URL,
        verify_max_attempts=4,
        verify_base_delay=1,
        verify_max_delay=4,
        verify_max_elapsed=60,
    )
    values.update(overrides)
    return GatewayConfig(**values)


def token_response(token="tok-1", expires_at=10_000):
    return FakeResponse(200, {"access_token": token, "expires_at": expires_at, "token_type": "O-Bearer"})


class FakeResponse:
    def __init__(self, status_code=200, data=None, text=None):
        self.status_code = status_code
        self._data = data
        if text is None:
            text = json.dumps(data) if data is not None else ""
        self.text = text

    def json(self):
        if self._data is None:
            raise ValueError("No JSON object could be decoded")
        return self._data


class FakeSession:
    """Stands in for ``requests.Session``.

    Routes map ``(method, url)`` to a response, an exception, or a list of
    them served in order (the last one repeats). Unrouted URLs answer 404.
    """

    def __init__(self, routes=None):
        self.routes = {}
        self.calls = []
        for key, value in (routes or {}).items():
            self.route(key[0], key[1], value)

    def route(self, method, url, value):
        self.routes[(method, url)] = list(value) if isinstance(value, list) else [value]

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        queue = self.routes.get((method, url))
        if not queue:
            return FakeResponse(404, {"message": "Not Found"})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)

    def urls(self, method=None):
        return [c["url"] for c in self.calls if method is None or c["method"] == method]
