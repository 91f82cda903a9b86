from jojopay.errors import ValidationError
from jojopay.providers.base import CaptureResult, PaymentProvider, ProviderOrder
from jojopay.providers.paypal import PayPalProvider
from jojopay.providers.tap import TapProvider

PROVIDERS = {
    "paypal": PayPalProvider,
    "tap": TapProvider,
}

_instances = {}


def get_provider(name: str) -> PaymentProvider:
    key = (name or "").lower()
    if key not in PROVIDERS:
        raise ValidationError(f"Unknown payment provider: {name}")
    # One client per process so the PayPal token loader is shared
    if key not in _instances:
        _instances[key] = PROVIDERS[key]()
    return _instances[key]


def reset_providers():
    _instances.clear()


__all__ = [
    "CaptureResult",
    "PaymentProvider",
    "ProviderOrder",
    "PayPalProvider",
    "TapProvider",
    "get_provider",
    "reset_providers",
]
