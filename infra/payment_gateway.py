"""
rampsettle Infrastructure: Payment Gateway Client

Hosted-checkout collaborator (Monnify style API):
- basic-auth login returns a bearer token, cached until shortly before expiry
- init-transaction returns the checkout URL for one order reference
- transaction query verifies a payment before the order advances
"""

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from requests.auth import HTTPBasicAuth

from core.exceptions import UpstreamUnavailable
from infra.http_client import JsonHttpClient
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

TOKEN_REFRESH_MARGIN_SECONDS = 60.0


@dataclass
class CheckoutLink:
    checkout_url: str
    payment_reference: str
    transaction_reference: Optional[str] = None


@dataclass
class PaymentVerification:
    reference: str
    status: str
    paid_amount: float

    @property
    def is_paid(self) -> bool:
        return self.status.upper() in ("PAID", "OVERPAID")


class PaymentGatewayClient(JsonHttpClient):
    """Creates checkout links and verifies payments."""

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        contract_code: Optional[str] = None,
        currency: str = "NGN",
        redirect_url: Optional[str] = None,
        timeout: float = 15.0,
        metrics: Optional[MetricsRecorder] = None,
    ):
        super().__init__("payment_gateway", metrics)
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key or ""
        self.secret_key = secret_key or ""
        self.contract_code = contract_code or ""
        self.currency = currency
        self.redirect_url = redirect_url
        self.timeout = timeout

        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    @classmethod
    def from_config(cls, raw: Dict[str, Any], metrics: Optional[MetricsRecorder] = None) -> "PaymentGatewayClient":
        base_url = raw.get("base_url")
        if base_url and "${" in base_url:
            base_url = os.path.expandvars(base_url)
        return cls(
            base_url=base_url,
            api_key=os.getenv(raw.get("api_key_env", "PAYMENT_API_KEY"), ""),
            secret_key=os.getenv(raw.get("secret_key_env", "PAYMENT_SECRET_KEY"), ""),
            contract_code=os.getenv(raw.get("contract_code_env", "PAYMENT_CONTRACT_CODE"), ""),
            currency=raw.get("currency", "NGN"),
            redirect_url=raw.get("redirect_url"),
            timeout=float(raw.get("timeout_seconds", 15.0)),
            metrics=metrics,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.api_key and self.secret_key)

    def _access_token(self) -> str:
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            payload = self.request_json(
                "POST",
                f"{self.base_url}/api/v1/auth/login",
                timeout=self.timeout,
                endpoint="login",
                auth=HTTPBasicAuth(self.api_key, self.secret_key),
            )
            body = self._body(payload, "login")
            token = body.get("accessToken")
            if not token:
                raise UpstreamUnavailable("payment_gateway:login", ValueError("no accessToken in response"))
            expires_in = float(body.get("expiresIn", 3600))
            self._token = token
            self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_REFRESH_MARGIN_SECONDS, 0.0)
            logger.debug("Payment gateway token refreshed (expires in %.0fs)", expires_in)
            return token

    def create_checkout(self, amount: float, reference: str, payer_info: Dict[str, Any]) -> CheckoutLink:
        if not self.is_configured:
            raise UpstreamUnavailable("payment_gateway:init", ValueError("payment gateway not configured"))

        token = self._access_token()
        payload = self.request_json(
            "POST",
            f"{self.base_url}/api/v1/merchant/transactions/init-transaction",
            timeout=self.timeout,
            endpoint="init_transaction",
            headers={"Authorization": f"Bearer {token}"},
            json_body={
                "amount": amount,
                "customerName": payer_info.get("name") or "Customer",
                "customerEmail": payer_info.get("email"),
                "paymentReference": reference,
                "paymentDescription": payer_info.get("description") or f"Order {reference}",
                "currencyCode": self.currency,
                "contractCode": self.contract_code,
                "redirectUrl": self.redirect_url,
                "paymentMethods": ["CARD", "ACCOUNT_TRANSFER"],
            },
        )
        body = self._body(payload, "init_transaction")
        checkout_url = body.get("checkoutUrl")
        if not checkout_url:
            raise UpstreamUnavailable("payment_gateway:init_transaction", ValueError("no checkoutUrl in response"))
        return CheckoutLink(
            checkout_url=checkout_url,
            payment_reference=body.get("paymentReference") or reference,
            transaction_reference=body.get("transactionReference"),
        )

    def verify_payment(self, reference: str) -> PaymentVerification:
        token = self._access_token()
        payload = self.request_json(
            "GET",
            f"{self.base_url}/api/v2/merchant/transactions/query",
            timeout=self.timeout,
            endpoint="verify",
            headers={"Authorization": f"Bearer {token}"},
            params={"paymentReference": reference},
        )
        body = self._body(payload, "verify")
        try:
            paid = float(body.get("amountPaid") or 0.0)
        except (TypeError, ValueError) as exc:
            raise UpstreamUnavailable("payment_gateway:verify", exc) from exc
        return PaymentVerification(
            reference=reference,
            status=str(body.get("paymentStatus") or "UNKNOWN"),
            paid_amount=paid,
        )

    @staticmethod
    def _body(payload: Dict[str, Any], endpoint: str) -> Dict[str, Any]:
        if payload.get("requestSuccessful") is False:
            raise UpstreamUnavailable(
                f"payment_gateway:{endpoint}",
                ValueError(payload.get("responseMessage", "request unsuccessful")),
            )
        return payload.get("responseBody") or {}
