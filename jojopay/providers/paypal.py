import json
import time

import httpx
import structlog

from jojopay.config import get_settings
from jojopay.errors import ConfigurationError, ProviderRequestError, ProviderResponseInvalid
from jojopay.loader import ResourceLoader
from jojopay.providers.base import CaptureResult, PaymentProvider, ProviderOrder

logger = structlog.get_logger(__name__)

SDK_URL = "https://www.paypal.com/sdk/js"
# Refresh the OAuth token this many seconds before PayPal expires it
TOKEN_EXPIRY_MARGIN = 60


class PayPalProvider(PaymentProvider):
    name = "paypal"

    def __init__(self, settings=None, http: httpx.Client = None, sleep=time.sleep):
        self.settings = settings or get_settings()
        super().__init__(http=http, timeout=self.settings.provider_timeout)
        self.base_url = self.settings.paypal_api_url
        self.token_loader = ResourceLoader(
            "paypal-access-token",
            self._fetch_access_token,
            is_valid=lambda token: token[1] > time.time(),
            sleep=sleep,
        )

    def _require_credentials(self):
        missing = []
        if not self.settings.paypal_client_id:
            missing.append("PAYPAL_CLIENT_ID")
        if not self.settings.paypal_client_secret:
            missing.append("PAYPAL_CLIENT_SECRET")
        if missing:
            logger.error("paypal_not_configured", missing=missing)
            raise ConfigurationError(details=f"Missing PayPal credentials: {', '.join(missing)}")

    def _fetch_access_token(self):
        self._require_credentials()
        data = self._request(
            "POST",
            f"{self.base_url}/v1/oauth2/token",
            auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        token = data.get("access_token")
        if not token:
            raise ProviderResponseInvalid(details="PayPal token response missing access_token")
        expires_in = int(data.get("expires_in", 3600))
        logger.info("paypal_token_obtained", environment=self.settings.paypal_environment)
        return token, time.time() + expires_in - TOKEN_EXPIRY_MARGIN

    def _call(self, method: str, path: str, **kwargs) -> dict:
        for attempt in range(2):
            token, _ = self.token_loader.load()
            headers = {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
            try:
                return self._request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
            except ProviderRequestError as exc:
                if exc.provider_status == 401 and attempt == 0:
                    # Revoked token: drop it and load a fresh one
                    self.token_loader.reset()
                    continue
                raise

    def create_payment(self, amount, plan_id, user_id, description=None, return_url=None):
        self._require_credentials()
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "amount": {"currency_code": "USD", "value": f"{float(amount):.2f}"},
                "description": description or "JojoPrompts Subscription",
                "custom_id": f"{user_id}_{plan_id}",
                "invoice_id": f"jojo_{plan_id}_{user_id}_{int(time.time() * 1000)}",
            }],
        }
        if return_url:
            payload["application_context"] = {
                "return_url": return_url,
                "cancel_url": f"{return_url}{'&' if '?' in return_url else '?'}success=false",
            }

        data = self._call("POST", "/v2/checkout/orders", json=payload)
        if not data.get("id"):
            raise ProviderResponseInvalid(details="PayPal order response missing id")

        approval_url = next(
            (link.get("href") for link in data.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        logger.info("paypal_order_created", order_id=data["id"], status=data.get("status"))
        return ProviderOrder(id=data["id"], status=data.get("status", "CREATED"), approval_url=approval_url, raw=data)

    def capture_payment(self, order_id):
        self._require_credentials()
        try:
            data = self._call("POST", f"/v2/checkout/orders/{order_id}/capture", json={})
        except ProviderRequestError as exc:
            if exc.provider_status != 422:
                raise
            issues = {detail.get("issue") for detail in exc.payload.get("details") or []
                      if isinstance(detail, dict)}
            if "INSTRUMENT_DECLINED" in issues:
                logger.info("paypal_instrument_declined", order_id=order_id)
                return CaptureResult(order_id=order_id, status="DECLINED", raw=exc.payload)
            if "ORDER_ALREADY_CAPTURED" not in issues:
                logger.error("paypal_capture_unprocessable", order_id=order_id, issues=sorted(filter(None, issues)))
                raise
            # Read the order so both callers see the same capture
            logger.info("paypal_order_already_captured", order_id=order_id)
            data = self.fetch_payment(order_id)
        return self._parse_capture(order_id, data)

    def fetch_payment(self, order_id):
        self._require_credentials()
        return self._call("GET", f"/v2/checkout/orders/{order_id}")

    @staticmethod
    def _parse_capture(order_id, data) -> CaptureResult:
        order_status = data.get("status")
        if not order_status:
            raise ProviderResponseInvalid(details="PayPal capture response missing status")

        try:
            capture = data["purchase_units"][0]["payments"]["captures"][0]
        except (KeyError, IndexError, TypeError):
            capture = {}

        status = order_status
        if capture.get("status") in ("DECLINED", "FAILED"):
            status = capture["status"]
        elif order_status == "COMPLETED" and capture.get("status") == "PENDING":
            status = "PENDING"

        payer = data.get("payer") or {}
        return CaptureResult(
            order_id=order_id,
            status=status,
            capture_id=capture.get("id"),
            payer_info={"payer_id": payer.get("payer_id"), "email": payer.get("email_address")},
            raw=data,
        )

    def verify_webhook(self, body: bytes, headers) -> bool:
        if not self.settings.paypal_webhook_id:
            if self.settings.paypal_environment == "production":
                raise ConfigurationError(details="PAYPAL_WEBHOOK_ID is required in production")
            logger.warning("paypal_webhook_unverified", reason="PAYPAL_WEBHOOK_ID not configured")
            return True

        try:
            event = json.loads(body)
        except ValueError:
            return False

        verification = {
            "auth_algo": headers.get("paypal-auth-algo"),
            "cert_id": headers.get("paypal-cert-id"),
            "transmission_id": headers.get("paypal-transmission-id"),
            "transmission_sig": headers.get("paypal-transmission-sig"),
            "transmission_time": headers.get("paypal-transmission-time"),
            "webhook_id": self.settings.paypal_webhook_id,
            "webhook_event": event,
        }
        try:
            result = self._call("POST", "/v1/notifications/verify-webhook-signature", json=verification)
        except (ProviderRequestError, ProviderResponseInvalid) as exc:
            logger.error("paypal_webhook_verification_failed", error=exc.message)
            return False
        return result.get("verification_status") == "SUCCESS"

    def sdk_script_url(self) -> str:
        self._require_credentials()
        return f"{SDK_URL}?client-id={self.settings.paypal_client_id}&currency=USD&components=buttons"
