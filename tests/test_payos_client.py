import hashlib
import hmac

import pytest

from rental.services.payos_client import PayOSClient, WebhookSignatureError, new_order_code


@pytest.fixture
def client():
    return PayOSClient("client-id", "api-key", "checksum-key")


def test_sign_uses_sorted_query_string(client):
    data = {"orderCode": 123, "amount": 5000, "description": "Invoice payment"}
    expected = hmac.new(
        b"checksum-key", b"amount=5000&description=Invoice payment&orderCode=123", hashlib.sha256
    ).hexdigest()

    assert client.sign(data) == expected


def test_sign_normalises_values(client):
    data = {"b": None, "a": True, "c": [{"y": 2, "x": 1}]}
    expected = hmac.new(
        b"checksum-key", b'a=true&b=&c=[{"x":1,"y":2}]', hashlib.sha256
    ).hexdigest()

    assert client.sign(data) == expected


def test_verify_webhook_data(client):
    data = {"orderCode": 123, "amount": 5000, "code": "00"}
    payload = {"code": "00", "data": data, "signature": client.sign(data)}

    assert client.verify_webhook_data(payload) == data

    tampered = {"code": "00", "data": dict(data, amount=1), "signature": payload["signature"]}
    with pytest.raises(WebhookSignatureError):
        client.verify_webhook_data(tampered)
    with pytest.raises(WebhookSignatureError):
        client.verify_webhook_data({"data": data})


def test_client_requires_credentials():
    with pytest.raises(ValueError):
        PayOSClient("client-id", "", "checksum-key")


def test_order_codes_are_positive_integers():
    code = new_order_code()
    assert isinstance(code, int)
    assert code > 0
