import hashlib
import hmac
import json

import httpx
import pytest

from orderflow.core_settings import Settings
from orderflow.domain.errors import PaymentGatewayError, PaymentGatewayTimeout
from orderflow.infrastructure.payment_gateway import (
    PaymentGatewayClient,
    canonical_string,
    create_signature,
    generate_gateway_order_code,
)


class TestSignature:
    def test_canonical_string_sorts_and_normalizes(self):
        data = {"orderCode": 123, "amount": 5000, "desc": None, "success": True, "items": [{"a": 1}]}
        assert canonical_string(data) == 'amount=5000&desc=&items=[{"a":1}]&orderCode=123&success=true'

    def test_signature_is_hmac_sha256_hex(self):
        data = {"b": "2", "a": "1"}
        expected = hmac.new(b"key", b"a=1&b=2", hashlib.sha256).hexdigest()
        assert create_signature(data, "key") == expected

    def test_verify(self, gateway):
        data = {"orderCode": 1, "amount": 2000}
        signature = gateway.sign(data)

        assert gateway.verify_signature(data, signature) is True
        assert gateway.verify_signature(data, signature.upper()) is True
        assert gateway.verify_signature(dict(data, amount=1), signature) is False
        assert gateway.verify_signature(data, None) is False

    def test_unconfigured_client_verifies_nothing(self):
        client = PaymentGatewayClient(Settings(GATEWAY_CHECKSUM_KEY=None))
        assert client.verify_signature({"a": 1}, "deadbeef") is False
        assert client.configured is False


class TestRequests:
    def test_create_payment_link(self, gateway, fake_gateway, settings):
        link = gateway.create_payment_link(
            amount=150000, description="DH123456 extra", items=[{"name": "Netflix", "quantity": 1, "price": 150000}],
            buyer_name="A", buyer_email="a@example.com", gateway_order_code=111222333444,
        )

        assert link.gateway_order_code == 111222333444
        assert link.checkout_url.endswith("link-111222333444")
        request = fake_gateway.requests[0]
        assert request.headers["x-client-id"] == "client-id"
        assert request.headers["x-api-key"] == "api-key"
        body = json.loads(request.content)
        assert body["description"] == "DH123456 "
        assert body["returnUrl"] == "https://shop.example.com/payment/success"
        signed = {k: body[k] for k in ("amount", "cancelUrl", "description", "orderCode", "returnUrl")}
        assert body["signature"] == create_signature(signed, settings.GATEWAY_CHECKSUM_KEY)
        assert "buyerPhone" not in body

    def test_timeout_is_distinguished(self, gateway, fake_gateway):
        fake_gateway.timeout = True
        with pytest.raises(PaymentGatewayTimeout):
            gateway.get_payment_info(1)

    def test_error_response(self, gateway, fake_gateway):
        fake_gateway.down = True
        with pytest.raises(PaymentGatewayError):
            gateway.cancel_payment_link(1, "changed mind")

    def test_non_success_code_is_an_error(self, settings):
        transport = httpx.MockTransport(lambda r: httpx.Response(200, json={"code": "20", "desc": "bad request"}))
        client = PaymentGatewayClient(settings, transport=transport)
        with pytest.raises(PaymentGatewayError, match="20"):
            client.get_payment_info(1)

    def test_unconfigured_client_does_not_call_out(self):
        with pytest.raises(PaymentGatewayError):
            PaymentGatewayClient(Settings(GATEWAY_CLIENT_ID=None)).get_payment_info(1)


def test_gateway_order_codes_fit_twelve_digits():
    code = generate_gateway_order_code()
    assert 0 < code < 10 ** 12
