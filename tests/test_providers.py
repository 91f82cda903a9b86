import hashlib
import hmac
import json
import threading
import time

import httpx
import pytest

from conftest import FakePayPal, TAP_WEBHOOK_SECRET

from jojopay.config import get_settings
from jojopay.errors import ConfigurationError, ProviderRequestError, ProviderResponseInvalid
from jojopay.loader import ResourceLoader
from jojopay.providers import PayPalProvider, TapProvider
from jojopay.providers.tap import normalize_status


def paypal_client(handler):
    return PayPalProvider(get_settings(), http=httpx.Client(transport=httpx.MockTransport(handler)),
                          sleep=lambda seconds: None)


def tap_client(handler):
    return TapProvider(get_settings(), http=httpx.Client(transport=httpx.MockTransport(handler)))


def test_paypal_create_payment_builds_capture_order():
    fake = FakePayPal()
    order = paypal_client(fake).create_payment(9.99, "basic", "u1", description="Basic - JojoPrompts Subscription")

    assert order.id == "O1"
    assert order.approval_url.endswith("token=O1")
    body = json.loads(fake.orders["O1"])
    unit = body["purchase_units"][0]
    assert body["intent"] == "CAPTURE"
    assert unit["amount"] == {"currency_code": "USD", "value": "9.99"}
    assert unit["custom_id"] == "u1_basic"
    assert unit["invoice_id"].startswith("jojo_basic_u1_")


def test_paypal_token_is_fetched_once():
    fake = FakePayPal()
    provider = paypal_client(fake)

    provider.create_payment(9.99, "basic", "u1")
    provider.create_payment(9.99, "basic", "u2")

    assert fake.count("POST", "/v1/oauth2/token") == 1


def test_paypal_capture_parses_completion():
    fake = FakePayPal()
    provider = paypal_client(fake)
    provider.create_payment(9.99, "basic", "u1")

    result = provider.capture_payment("O1")

    assert result.completed
    assert result.capture_id == "CAP-O1"
    assert result.payer_info["email"] == "buyer@example.com"


def test_paypal_second_capture_reads_existing_order():
    fake = FakePayPal()
    provider = paypal_client(fake)
    provider.create_payment(9.99, "basic", "u1")

    first = provider.capture_payment("O1")
    second = provider.capture_payment("O1")

    assert first.capture_id == second.capture_id
    assert fake.count("GET", "/v2/checkout/orders/O1") == 1


def unprocessable_capture(issue):
    def handler(request):
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "t", "expires_in": 3600})
        if request.url.path.endswith("/capture"):
            return httpx.Response(422, json={"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": issue}]})
        return httpx.Response(200, json={"id": "O1", "status": "APPROVED"})

    return handler


def test_paypal_instrument_declined_is_a_declined_capture():
    result = paypal_client(unprocessable_capture("INSTRUMENT_DECLINED")).capture_payment("O1")

    assert result.status == "DECLINED"
    assert not result.completed
    assert result.capture_id is None


def test_paypal_other_unprocessable_capture_is_raised():
    handler = unprocessable_capture("ORDER_NOT_APPROVED")
    calls = []

    def recording(request):
        calls.append((request.method, request.url.path))
        return handler(request)

    with pytest.raises(ProviderRequestError) as exc:
        paypal_client(recording).capture_payment("O1")

    assert exc.value.provider_status == 422
    assert exc.value.payload["details"][0]["issue"] == "ORDER_NOT_APPROVED"
    assert ("GET", "/v2/checkout/orders/O1") not in calls


def test_paypal_declined_capture():
    fake = FakePayPal(capture_status="DECLINED")
    result = paypal_client(fake).capture_payment("O1")

    assert not result.completed
    assert result.status == "DECLINED"


def test_paypal_missing_credentials(monkeypatch):
    monkeypatch.delenv("PAYPAL_CLIENT_SECRET")
    fake = FakePayPal()

    with pytest.raises(ConfigurationError) as exc:
        paypal_client(fake).create_payment(9.99, "basic", "u1")

    assert exc.value.status_code == 503
    assert "PAYPAL_CLIENT_SECRET" in exc.value.details
    assert fake.calls == []


def test_paypal_server_error_is_retryable():
    fake = FakePayPal()
    provider = paypal_client(fake)
    provider.token_loader.load()
    fake.fail_next = [500]

    with pytest.raises(ProviderRequestError) as exc:
        provider.capture_payment("O1")

    assert exc.value.retryable
    assert exc.value.provider_status == 500


def test_paypal_transient_token_failure_is_retried():
    fake = FakePayPal()
    fake.fail_next = [503, 503]

    order = paypal_client(fake).create_payment(9.99, "basic", "u1")

    assert order.id == "O1"
    assert fake.count("POST", "/v1/oauth2/token") == 3


def test_paypal_revoked_token_is_reloaded():
    fake = FakePayPal()
    provider = paypal_client(fake)
    provider.token_loader.load()
    fake.fail_next = [401]

    provider.create_payment(9.99, "basic", "u1")

    assert fake.count("POST", "/v1/oauth2/token") == 2


def test_paypal_non_json_body_is_invalid_response():
    def handler(request):
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "t", "expires_in": 3600})
        return httpx.Response(200, text="<html>oops</html>")

    with pytest.raises(ProviderResponseInvalid) as exc:
        paypal_client(handler).capture_payment("O1")

    assert not exc.value.retryable


def test_paypal_webhook_skips_verification_in_sandbox_without_id():
    assert paypal_client(FakePayPal()).verify_webhook(b"{}", {})


def test_paypal_webhook_requires_id_in_production(monkeypatch):
    monkeypatch.setenv("PAYPAL_ENVIRONMENT", "production")

    with pytest.raises(ConfigurationError):
        paypal_client(FakePayPal()).verify_webhook(b"{}", {})


def test_paypal_webhook_verified_with_paypal(monkeypatch):
    monkeypatch.setenv("PAYPAL_WEBHOOK_ID", "WH-1")
    fake = FakePayPal()

    assert paypal_client(fake).verify_webhook(b'{"id": "WH-EVT"}', {"paypal-transmission-id": "t1"})
    assert fake.count("POST", "/v1/notifications/verify-webhook-signature") == 1


def test_tap_create_and_capture():
    seen = []

    def handler(request):
        seen.append(request)
        if request.method == "POST":
            return httpx.Response(200, json={"id": "chg_1", "status": "INITIATED",
                                             "transaction": {"url": "https://tap/pay"}})
        return httpx.Response(200, json={"id": "chg_1", "status": "CAPTURED"})

    provider = tap_client(handler)
    order = provider.create_payment(9.99, "basic", "u1", return_url="https://shop.example/payment/callback")
    result = provider.capture_payment("chg_1")

    body = json.loads(seen[0].content)
    assert seen[0].headers["authorization"] == "Bearer sk_test_tap"
    assert body["metadata"] == {"user_id": "u1", "plan_id": "basic"}
    assert body["redirect"]["url"] == "https://shop.example/payment/callback"
    assert order.approval_url == "https://tap/pay"
    assert result.completed
    assert result.capture_id == "chg_1"


def test_tap_missing_key(monkeypatch):
    monkeypatch.delenv("TAP_SECRET_KEY")

    with pytest.raises(ConfigurationError):
        tap_client(lambda request: httpx.Response(200, json={})).fetch_payment("chg_1")


def test_tap_status_vocabulary():
    assert normalize_status("CAPTURED") == "COMPLETED"
    assert normalize_status("VOID") == "VOIDED"
    assert normalize_status("declined") == "DECLINED"
    assert normalize_status("INITIATED") == "INITIATED"


def test_tap_webhook_signature():
    body = b'{"id": "chg_1", "status": "CAPTURED"}'
    signature = hmac.new(TAP_WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()
    provider = tap_client(lambda request: httpx.Response(200, json={}))

    assert provider.verify_webhook(body, {"hashstring": signature})
    assert provider.verify_webhook(body, {"hashstring": f"sha256={signature}"})
    assert not provider.verify_webhook(body, {"hashstring": "0" * 64})
    assert not provider.verify_webhook(body, {})


def test_loader_deduplicates_concurrent_loads():
    started = threading.Event()
    release = threading.Event()
    calls = []

    def fetch():
        calls.append(1)
        started.set()
        release.wait(5)
        return "sdk"

    loader = ResourceLoader("sdk", fetch)
    results = []
    threads = [threading.Thread(target=lambda: results.append(loader.load())) for _ in range(4)]
    threads[0].start()
    started.wait(5)
    for thread in threads[1:]:
        thread.start()
    time.sleep(0.05)
    release.set()
    for thread in threads:
        thread.join(5)

    assert results == ["sdk"] * 4
    assert len(calls) == 1


def test_loader_retries_with_backoff_then_gives_up():
    delays = []

    def fetch():
        raise ProviderRequestError(details="down")

    loader = ResourceLoader("sdk", fetch, attempts=3, base_delay=0.5, sleep=delays.append)

    with pytest.raises(ProviderRequestError):
        loader.load()

    assert loader.load_count == 3
    assert len(delays) == 2
    assert delays[0] < delays[1]
    assert not loader.loaded


def test_loader_does_not_retry_permanent_errors():
    def fetch():
        raise ConfigurationError()

    loader = ResourceLoader("sdk", fetch, sleep=lambda seconds: None)

    with pytest.raises(ConfigurationError):
        loader.load()
    assert loader.load_count == 1


def test_loader_reloads_stale_value():
    values = iter(["broken", "fresh"])
    loader = ResourceLoader("sdk", lambda: next(values), is_valid=lambda value: value != "broken")

    assert loader.load() == "broken"
    assert loader.load() == "fresh"
    assert loader.load_count == 2
