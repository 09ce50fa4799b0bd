# busconnect/infrastructure/gateways/paystack_client.py

from dataclasses import dataclass, field
import hashlib
import hmac
import logging

import httpx


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayResponse:
    status_code: int
    body: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300 and bool(self.body.get("status"))

    @property
    def data(self) -> dict:
        data = self.body.get("data")
        return data if isinstance(data, dict) else {}

    @property
    def message(self) -> str:
        return str(self.body.get("message") or f"HTTP {self.status_code}")


class PaystackClient:
    """
    Thin HTTP client for the Paystack transaction API.
    Transport errors and timeouts propagate as httpx exceptions.
    """

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.secret_key = secret_key
        self._http = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    def initialize_transaction(self, payload: dict) -> GatewayResponse:
        return self._request("POST", "/transaction/initialize", json=payload)

    def verify_transaction(self, reference: str) -> GatewayResponse:
        return self._request("GET", f"/transaction/verify/{reference}")

    def submit_otp(self, reference: str, otp: str) -> GatewayResponse:
        return self._request(
            "POST",
            "/charge/submit_otp",
            json={"reference": reference, "otp": otp},
        )

    def compute_signature(self, raw_body: bytes) -> str:
        return compute_signature(self.secret_key, raw_body)

    def close(self) -> None:
        self._http.close()

    def _request(self, method: str, path: str, **kwargs) -> GatewayResponse:
        response = self._http.request(method, path, **kwargs)

        try:
            body = response.json()
        except ValueError:
            logger.exception(
                "Paystack returned a non-JSON body for %s %s (HTTP %s)",
                method,
                path,
                response.status_code,
            )
            body = {}

        if not isinstance(body, dict):
            body = {"data": body}

        return GatewayResponse(status_code=response.status_code, body=body)


def compute_signature(secret_key: str, raw_body: bytes) -> str:
    return hmac.new(secret_key.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_webhook_signature(
    secret_key: str,
    raw_body: bytes,
    signature: str | None,
) -> bool:
    if not signature:
        return False
    expected = compute_signature(secret_key, raw_body)
    return hmac.compare_digest(expected, signature.strip().lower())
