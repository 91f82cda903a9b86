from jojopay.callback.flow import CallbackOutcome, PaymentCallbackProcessor
from jojopay.callback.params import PaymentParams, extract_payment_params
from jojopay.callback.router import StatusRouter, destination
from jojopay.callback.session import AuthEvents, SessionRestorer, TokenAuthBackend
from jojopay.callback.state import PaymentAttempt, PaymentState

__all__ = [
    "AuthEvents",
    "CallbackOutcome",
    "PaymentAttempt",
    "PaymentCallbackProcessor",
    "PaymentParams",
    "PaymentState",
    "SessionRestorer",
    "StatusRouter",
    "TokenAuthBackend",
    "destination",
    "extract_payment_params",
]
