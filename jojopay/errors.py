"""Failure taxonomy shared by the provider clients, the service layer and the routes."""


class PaymentError(Exception):
    status_code = 500
    retryable = False
    public_message = "Internal server error"

    def __init__(self, message: str = None, details: str = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        self.details = details

    def to_dict(self):
        body = {"success": False, "error": self.message, "retryable": self.retryable}
        if self.details:
            body["details"] = self.details
        return body


class ConfigurationError(PaymentError):
    """A provider secret is missing. Operator problem, never retried."""
    status_code = 503
    public_message = "Payment service not configured"


class ProviderRequestError(PaymentError):
    """The provider answered with a non-2xx status or could not be reached."""
    status_code = 502
    retryable = True
    public_message = "Payment gateway error"

    def __init__(self, message: str = None, details: str = None, provider_status: int = None,
                 payload: dict = None):
        super().__init__(message, details)
        self.provider_status = provider_status
        self.payload = payload or {}


class ProviderResponseInvalid(PaymentError):
    """The provider payload was not JSON or lacked expected fields."""
    status_code = 502
    public_message = "Invalid response from payment gateway"


class CaptureIncomplete(PaymentError):
    """The provider reported a declined or non-terminal capture."""
    status_code = 402
    public_message = "Payment not completed"

    def __init__(self, message: str = None, details: str = None, status: str = None):
        super().__init__(message, details)
        self.status = status

    def to_dict(self):
        body = super().to_dict()
        body["status"] = self.status
        return body


class ValidationError(PaymentError):
    status_code = 400
    public_message = "Invalid request"


class AuthenticationError(PaymentError):
    status_code = 401
    public_message = "Invalid or missing token"


class NotFoundError(PaymentError):
    status_code = 404
    public_message = "Not found"
