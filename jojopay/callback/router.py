from typing import Callable, Optional
from urllib.parse import quote, urlencode

import structlog

logger = structlog.get_logger(__name__)

SUCCESS_PATH = "/payment-success"
FAILED_PATH = "/payment-failed"

SUCCESS_STATUSES = ("COMPLETED", "CAPTURED")
FAILURE_REASONS = {
    "FAILED": "Payment failed",
    "CANCELLED": "Payment was cancelled",
    "DECLINED": "Payment declined",
    "VOIDED": "Payment was voided",
}


def _query(params) -> str:
    return urlencode({k: v for k, v in params if v}, quote_via=quote)


def destination(status, plan_id=None, user_id=None, payment_id=None, reason=None) -> Optional[str]:
    """URL for a terminal provider status, ``None`` for anything still in flight."""
    status = (status or "").upper()
    if status in SUCCESS_STATUSES:
        return f"{SUCCESS_PATH}?" + _query([
            ("planId", plan_id), ("userId", user_id), ("payment_id", payment_id),
        ])
    if status in FAILURE_REASONS:
        return f"{FAILED_PATH}?" + _query([
            ("planId", plan_id),
            ("reason", reason or FAILURE_REASONS[status]),
            ("status", status),
            ("payment_id", payment_id),
        ])
    return None


class StatusRouter:
    def __init__(self, navigate: Callable[[str], None]):
        self.navigate = navigate

    def route(self, attempt, status, plan_id=None, user_id=None, payment_id=None, reason=None):
        url = destination(status, plan_id, user_id, payment_id, reason)
        if url is None:
            return None
        if not attempt.latch():
            logger.info("navigation_suppressed", order_id=attempt.order_id, status=status)
            return None
        logger.info("navigating", order_id=attempt.order_id, status=status, url=url)
        self.navigate(url)
        return url
