import hashlib
import hmac
import uuid
from urllib.parse import quote

import httpx
import structlog

from jojopay.config import get_settings
from jojopay.errors import ConfigurationError, ProviderResponseInvalid
from jojopay.providers.base import COMPLETED, CaptureResult, PaymentProvider, ProviderOrder

logger = structlog.get_logger(__name__)

API_URL = "https://api.tap.company/v2"
SDK_URL = "https://tap.company/js/pay.js"

# Tap charge statuses onto the shared vocabulary
STATUS_MAP = {
    "CAPTURED": COMPLETED,
    "DECLINED": "DECLINED",
    "FAILED": "FAILED",
    "CANCELLED": "CANCELLED",
    "VOID": "VOIDED",
    "ABANDONED": "CANCELLED",
    "RESTRICTED": "DECLINED",
    "TIMEDOUT": "FAILED",
}


def normalize_status(status: str) -> str:
    return STATUS_MAP.get((status or "").upper(), (status or "").upper())


class TapProvider(PaymentProvider):
    name = "tap"

    def __init__(self, settings=None, http: httpx.Client = None):
        self.settings = settings or get_settings()
        super().__init__(http=http, timeout=self.settings.provider_timeout)

    def _headers(self):
        if not self.settings.tap_secret_key:
            logger.error("tap_not_configured", missing=["TAP_SECRET_KEY"])
            raise ConfigurationError(details="Missing Tap credentials: TAP_SECRET_KEY")
        return {
            "Authorization": f"Bearer {self.settings.tap_secret_key}",
            "Content-Type": "application/json",
        }

    def create_payment(self, amount, plan_id, user_id, description=None, return_url=None):
        headers = self._headers()
        body = {
            "amount": float(amount),
            "currency": "USD",
            "threeDSecure": True,
            "customer_initiated": True,
            "description": description or "JojoPrompts Subscription",
            "reference": {"transaction": str(uuid.uuid4())},
            "metadata": {"user_id": user_id, "plan_id": plan_id},
            "redirect": {"url": return_url or f"{self.settings.public_site_url}/payment/callback"},
            "source": {"id": "src_all"},
        }
        logger.info("tap_charge_creating", amount=body["amount"], user_id=user_id, redirect_url=body["redirect"]["url"])
        data = self._request("POST", f"{API_URL}/charges", json=body, headers=headers)
        if not data.get("id"):
            raise ProviderResponseInvalid(details="Tap charge response missing id")

        approval_url = (data.get("transaction") or {}).get("url") or (data.get("redirect") or {}).get("url")
        logger.info("tap_charge_created", charge_id=data["id"], status=data.get("status"))
        return ProviderOrder(id=data["id"], status=data.get("status", "INITIATED"), approval_url=approval_url, raw=data)

    def fetch_payment(self, order_id):
        headers = self._headers()
        data = self._request("GET", f"{API_URL}/charges/{quote(order_id, safe='')}", headers=headers)
        logger.info("tap_charge_fetched", charge_id=data.get("id"), status=data.get("status"),
                    amount=data.get("amount"), currency=data.get("currency"))
        return data

    def capture_payment(self, order_id):
        # Tap captures during its own redirect, so capturing means reading the charge back
        data = self.fetch_payment(order_id)
        if not data.get("status"):
            raise ProviderResponseInvalid(details="Tap charge response missing status")
        customer = data.get("customer") or {}
        return CaptureResult(
            order_id=order_id,
            status=normalize_status(data["status"]),
            capture_id=data.get("id"),
            payer_info={"customer_id": customer.get("id"), "email": customer.get("email")},
            raw=data,
        )

    def verify_webhook(self, body: bytes, headers) -> bool:
        secret = self.settings.tap_webhook_secret
        if not secret:
            raise ConfigurationError(details="Missing TAP_WEBHOOK_SECRET")
        signature = headers.get("hashstring")
        if not signature:
            return False
        signature = signature.replace("sha256=", "")
        expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature)
