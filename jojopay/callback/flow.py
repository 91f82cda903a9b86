from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from jojopay.callback.params import PENDING_PAYMENT_KEY, PaymentParams, extract_payment_params
from jojopay.callback.router import StatusRouter
from jojopay.callback.session import RestoreResult, SessionRestorer
from jojopay.callback.state import DEFAULT_MAX_POLLS, PaymentAttempt, PaymentState
from jojopay.errors import PaymentError, ProviderRequestError

logger = structlog.get_logger(__name__)

SUPPORT_REASON = "Payment verification failed - please contact support"


@dataclass
class CallbackOutcome:
    attempt: PaymentAttempt
    params: PaymentParams
    restore: Optional[RestoreResult] = None
    url: Optional[str] = None

    @property
    def navigated(self) -> bool:
        return self.url is not None


class PaymentCallbackProcessor:
    """Drive a provider callback from raw query to a success or failure destination.

    ``capture(provider, order_id, plan_id, user_id)`` must verify the payment
    with the provider server-side and return a dict with ``status`` and
    ``captureId``. ``find_transaction(order_id, user_id)`` returns the stored
    transaction or ``None``.
    """

    def __init__(self, capture: Callable, find_transaction: Callable, restorer: SessionRestorer,
                 router: StatusRouter, session_storage, local_storage,
                 max_polls: int = DEFAULT_MAX_POLLS, default_provider: str = "paypal"):
        self.capture = capture
        self.find_transaction = find_transaction
        self.restorer = restorer
        self.router = router
        self.session_storage = session_storage
        self.local_storage = local_storage
        self.max_polls = max_polls
        self.default_provider = default_provider

    def _fail(self, outcome, status, reason):
        attempt = outcome.attempt
        attempt.last_error = attempt.last_error or reason
        if not attempt.status.terminal:
            attempt.status = PaymentState.CANCELLED if status == "CANCELLED" else PaymentState.FAILED
            attempt.provider_status = status
        outcome.url = self.router.route(attempt, status, plan_id=attempt.plan_id,
                                        payment_id=outcome.params.payment_id, reason=reason)
        return outcome

    def process(self, query) -> CallbackOutcome:
        outcome = self._process(query)
        if outcome.navigated:
            self.local_storage.pop(PENDING_PAYMENT_KEY, None)
        return outcome

    def _process(self, query) -> CallbackOutcome:
        params = extract_payment_params(query, self.session_storage, self.local_storage)
        context = self.restorer.payment_context() or {}
        order_id = params.order_reference or context.get("orderId")

        attempt = PaymentAttempt(
            provider="tap" if query.get("tap_id") else None,
            plan_id=params.plan_id or context.get("planId"),
            user_id=params.user_id or context.get("userId"),
            order_id=order_id,
            max_polls=self.max_polls,
            marker_storage=self.session_storage,
        )
        outcome = CallbackOutcome(attempt=attempt, params=params)

        if attempt.latched:
            logger.info("callback_already_processed", order_id=order_id)
            return outcome

        # A success flag is only a hint, but an explicit cancel means the buyer backed out
        if params.cancelled:
            attempt.cancel()
            return self._fail(outcome, "CANCELLED", "Payment was cancelled")

        if not order_id:
            logger.error("callback_missing_payment_info", debug=params.debug)
            return self._fail(outcome, "FAILED", "Missing payment information")

        restore = self.restorer.restore()
        transaction = self.find_transaction(order_id, restore.user_id if restore.success else None)
        if not restore.success and transaction is not None:
            restore = self.restorer.restore(transaction_user_id=transaction.user_id)
        outcome.restore = restore

        if transaction is not None:
            attempt.provider = attempt.provider or transaction.provider
            attempt.plan_id = attempt.plan_id or transaction.plan_id
            attempt.user_id = transaction.user_id
        elif restore.success:
            attempt.user_id = attempt.user_id or restore.user_id
        attempt.provider = attempt.provider or self.default_provider

        logger.info("callback_verifying", order_id=order_id, provider=attempt.provider,
                    plan_id=attempt.plan_id, user_id=attempt.user_id,
                    restored=restore.source, transaction_found=transaction is not None)

        while not attempt.status.terminal:
            attempt.dispatch()
            try:
                result = self.capture(attempt.provider, order_id, attempt.plan_id, attempt.user_id)
            except ProviderRequestError as exc:
                logger.warning("callback_transient_error", order_id=order_id,
                               poll=attempt.poll_count, error=exc.details or exc.message)
                if attempt.record_transient_error(exc.details or exc.message):
                    continue
                return self._fail(outcome, "FAILED", SUPPORT_REASON)
            except PaymentError as exc:
                logger.error("callback_verification_failed", order_id=order_id, error=exc.message)
                attempt.last_error = exc.details or exc.message
                return self._fail(outcome, "FAILED", exc.message)

            state = attempt.resolve(result["status"])
            if state is PaymentState.COMPLETED:
                outcome.url = self.router.route(
                    attempt, result["status"], plan_id=result.get("planId") or attempt.plan_id,
                    user_id=result.get("userId") or attempt.user_id,
                    payment_id=result.get("captureId"),
                )
                return outcome
            if state.terminal:
                outcome.url = self.router.route(attempt, result["status"], plan_id=attempt.plan_id,
                                                payment_id=params.payment_id)
                return outcome
            if attempt.poll_count >= attempt.max_polls:
                logger.info("callback_still_pending", order_id=order_id, status=result["status"])
                return outcome
        return outcome
