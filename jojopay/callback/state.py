import enum
from dataclasses import dataclass
from typing import Optional

COMPLETE_MARKER = "payment_processing_complete"
DEFAULT_MAX_POLLS = 2


class PaymentState(str, enum.Enum):
    CHECKING = "checking"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (PaymentState.COMPLETED, PaymentState.FAILED, PaymentState.CANCELLED)


# Provider statuses that end an attempt
PROVIDER_OUTCOMES = {
    "COMPLETED": PaymentState.COMPLETED,
    "FAILED": PaymentState.FAILED,
    "DECLINED": PaymentState.FAILED,
    "CANCELLED": PaymentState.CANCELLED,
    "VOIDED": PaymentState.CANCELLED,
}


class InvalidTransition(Exception):
    pass


@dataclass
class PaymentAttempt:
    """One checkout attempt as seen from the callback page.

    Terminal states are sticky. The completion latch lives in
    ``marker_storage`` so a fresh attempt for the same order sees it too.
    """
    provider: Optional[str] = None
    plan_id: Optional[str] = None
    user_id: Optional[str] = None
    order_id: Optional[str] = None
    status: PaymentState = PaymentState.CHECKING
    poll_count: int = 0
    retry_count: int = 0
    max_polls: int = DEFAULT_MAX_POLLS
    last_error: Optional[str] = None
    provider_status: Optional[str] = None
    marker_storage: Optional[dict] = None
    complete: bool = False

    @property
    def marker_key(self) -> str:
        return f"{COMPLETE_MARKER}.{self.order_id or ''}"

    @property
    def latched(self) -> bool:
        if self.complete:
            return True
        return self.marker_storage is not None and bool(self.marker_storage.get(self.marker_key))

    def latch(self) -> bool:
        """Set the completion latch; ``False`` if it was already set."""
        if self.latched:
            return False
        self.complete = True
        if self.marker_storage is not None:
            self.marker_storage[self.marker_key] = "1"
        return True

    def dispatch(self):
        if self.status.terminal:
            raise InvalidTransition(f"attempt already {self.status.value}")
        self.status = PaymentState.VERIFYING
        self.poll_count += 1

    def resolve(self, provider_status: str) -> PaymentState:
        """Apply a provider status. Non-terminal statuses leave the attempt verifying."""
        if self.status.terminal:
            return self.status
        if self.status is not PaymentState.VERIFYING:
            raise InvalidTransition("no capture dispatched")
        self.provider_status = provider_status
        outcome = PROVIDER_OUTCOMES.get((provider_status or "").upper())
        if outcome is not None:
            self.status = outcome
        return self.status

    def cancel(self, reason: str = "Payment was cancelled"):
        if self.status.terminal:
            return
        self.status = PaymentState.CANCELLED
        self.provider_status = "CANCELLED"
        self.last_error = reason

    def record_transient_error(self, error: str) -> bool:
        """Note a retryable failure while verifying. Returns whether a retry remains."""
        self.last_error = error
        self.retry_count += 1
        return self.poll_count < self.max_polls

    def reset(self):
        if self.marker_storage is not None:
            self.marker_storage.pop(self.marker_key, None)
        self.complete = False
        self.status = PaymentState.CHECKING
        self.poll_count = 0
        self.retry_count = 0
        self.last_error = None
        self.provider_status = None
