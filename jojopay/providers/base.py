from dataclasses import dataclass, field
from typing import Optional

import httpx
import structlog

from jojopay.errors import ProviderRequestError, ProviderResponseInvalid

logger = structlog.get_logger(__name__)

COMPLETED = "COMPLETED"
FAILURE_STATUSES = ("FAILED", "CANCELLED", "DECLINED", "VOIDED")


@dataclass
class ProviderOrder:
    id: str
    status: str
    approval_url: Optional[str] = None
    raw: dict = field(default_factory=dict)


@dataclass
class CaptureResult:
    order_id: str
    status: str                      # normalised: COMPLETED, DECLINED, ... or provider's raw value
    capture_id: Optional[str] = None
    payer_info: dict = field(default_factory=dict)
    raw: dict = field(default_factory=dict)

    @property
    def completed(self) -> bool:
        return self.status == COMPLETED


class PaymentProvider:
    name = "provider"

    def __init__(self, http: httpx.Client = None, timeout: float = 30.0):
        self._http = http or httpx.Client(timeout=timeout)

    def create_payment(self, amount, plan_id: str, user_id: str, description: str = None,
                       return_url: str = None) -> ProviderOrder:
        raise NotImplementedError

    def capture_payment(self, order_id: str) -> CaptureResult:
        raise NotImplementedError

    def fetch_payment(self, order_id: str) -> dict:
        raise NotImplementedError

    def verify_webhook(self, body: bytes, headers) -> bool:
        raise NotImplementedError

    def _request(self, method: str, url: str, **kwargs) -> dict:
        """Send a request and decode the JSON body, mapping failures onto the taxonomy."""
        try:
            response = self._http.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            logger.error("provider_unreachable", provider=self.name, url=url, error=str(exc))
            raise ProviderRequestError(details=f"{self.name} unreachable: {exc}")

        if response.status_code >= 400:
            logger.error("provider_request_failed", provider=self.name, url=url,
                         status=response.status_code, body=response.text)
            try:
                payload = response.json()
            except ValueError:
                payload = None
            raise ProviderRequestError(
                details=f"{self.name} API error: {response.status_code}",
                provider_status=response.status_code,
                payload=payload if isinstance(payload, dict) else None,
            )

        try:
            data = response.json()
        except ValueError:
            logger.error("provider_response_invalid", provider=self.name, url=url, body=response.text)
            raise ProviderResponseInvalid(details=f"{self.name} returned a non-JSON body")

        if not isinstance(data, dict):
            logger.error("provider_response_invalid", provider=self.name, url=url, body=response.text)
            raise ProviderResponseInvalid(details=f"{self.name} returned an unexpected payload")
        return data
