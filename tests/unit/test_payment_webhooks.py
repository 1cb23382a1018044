"""
Unit tests for 渠道回调：签名校验、各渠道 payload 解析、handle_webhook 收尾 pending attempt。

签名 = HMAC-SHA256(PAYMENT_WEBHOOK_SECRET, 原始 body)，settings_test 里配置了测试用 secret。
"""
import hashlib
import hmac
import json

import pytest

from rxorders.exceptions import AuthError, ExternalServiceError, NotFoundError, ValidationError
from rxorders.models import PaymentAttempt
from rxorders.payments.gateways import MTNGateway, PayPalGateway, StripeGateway
from rxorders.payments.orchestrator import PaymentOrchestrator
from tests.conftest import FakeGateway, PaymentAttemptFactory

SECRET = b'test-webhook-secret'


def sign(body):
    return hmac.new(SECRET, body, hashlib.sha256).hexdigest()


def signed(payload, header='HTTP_X_WEBHOOK_SIGNATURE'):
    body = json.dumps(payload).encode()
    return body, {header: sign(body)}


# -------------------------------------------------------------------
# Signature
# -------------------------------------------------------------------

class TestSignature:

    def test_valid_signature(self):
        body = b'{"id": "ch_1"}'

        FakeGateway().verify_signature(body, sign(body))

    def test_missing_signature(self):
        with pytest.raises(AuthError) as exc_info:
            FakeGateway().verify_signature(b'{}', None)

        assert exc_info.value.code == 'INVALID_SIGNATURE'

    def test_signature_of_other_body(self):
        with pytest.raises(AuthError):
            FakeGateway().verify_signature(b'{"amount": "1.00"}', sign(b'{"amount": "45.50"}'))

    def test_secret_not_configured(self, settings):
        settings.PAYMENT_WEBHOOK_SECRET = ''

        with pytest.raises(ExternalServiceError) as exc_info:
            FakeGateway().verify_signature(b'{}', 'anything')

        assert exc_info.value.code == 'WEBHOOK_NOT_CONFIGURED'


# -------------------------------------------------------------------
# Per-gateway payloads
# -------------------------------------------------------------------

class TestParseWebhook:

    def test_stripe(self):
        event = StripeGateway().parse_webhook({
            'type': 'payment_intent.succeeded',
            'data': {'object': {'id': 'ch_123'}},
        })

        assert (event.transaction_id, event.outcome) == ('ch_123', 'succeeded')

    def test_stripe_other_event_is_ignored(self):
        assert StripeGateway().parse_webhook({'type': 'charge.refunded', 'data': {'object': {'id': 'ch_1'}}}) is None

    def test_paypal_denied(self):
        event = PayPalGateway().parse_webhook({
            'event_type': 'PAYMENT.CAPTURE.DENIED',
            'resource': {'id': 'PP123'},
        })

        assert (event.transaction_id, event.outcome) == ('PP123', 'failed')

    def test_mtn(self):
        event = MTNGateway().parse_webhook({'referenceId': 'MTNABC', 'status': 'SUCCESSFUL'})

        assert (event.transaction_id, event.outcome) == ('MTNABC', 'succeeded')

    def test_mtn_still_pending_is_ignored(self):
        assert MTNGateway().parse_webhook({'referenceId': 'MTNABC', 'status': 'PENDING'}) is None

    def test_gateways_use_their_own_signature_header(self):
        headers = {StripeGateway.signature_header, PayPalGateway.signature_header, MTNGateway.signature_header}

        assert len(headers) == 3


# -------------------------------------------------------------------
# handle_webhook
# -------------------------------------------------------------------

@pytest.fixture
def webhook_orchestrator(repository):
    return PaymentOrchestrator(repository, gateway_factory=lambda name: FakeGateway())


@pytest.mark.django_db
class TestHandleWebhook:

    def test_settles_pending_attempt(self, webhook_orchestrator):
        pending = PaymentAttemptFactory(status='pending', transaction_id='ch_async_1')
        body, headers = signed({'id': 'ch_async_1', 'outcome': 'succeeded'})

        attempt = webhook_orchestrator.handle_webhook('stripe', body, headers)

        assert attempt.id == pending.id
        assert PaymentAttempt.objects.get(id=pending.id).status == 'succeeded'
        assert attempt.gateway_response == {'id': 'ch_async_1', 'outcome': 'succeeded'}

    def test_duplicate_event_is_a_no_op(self, webhook_orchestrator):
        pending = PaymentAttemptFactory(status='pending', transaction_id='ch_async_1')
        body, headers = signed({'id': 'ch_async_1', 'outcome': 'succeeded'})
        webhook_orchestrator.handle_webhook('stripe', body, headers)
        updated_at = PaymentAttempt.objects.get(id=pending.id).updated_at

        attempt = webhook_orchestrator.handle_webhook('stripe', body, headers)

        assert attempt.status == 'succeeded'
        assert PaymentAttempt.objects.get(id=pending.id).updated_at == updated_at

    def test_bad_signature_changes_nothing(self, webhook_orchestrator):
        pending = PaymentAttemptFactory(status='pending', transaction_id='ch_async_1')
        body, _ = signed({'id': 'ch_async_1', 'outcome': 'succeeded'})

        with pytest.raises(AuthError):
            webhook_orchestrator.handle_webhook('stripe', body, {'HTTP_X_WEBHOOK_SIGNATURE': 'forged'})

        assert PaymentAttempt.objects.get(id=pending.id).status == 'pending'

    def test_unknown_transaction(self, webhook_orchestrator):
        body, headers = signed({'id': 'ch_missing', 'outcome': 'failed'})

        with pytest.raises(NotFoundError) as exc_info:
            webhook_orchestrator.handle_webhook('stripe', body, headers)

        assert exc_info.value.code == 'PAYMENT_NOT_FOUND'

    def test_ignored_event_type(self, webhook_orchestrator):
        body, headers = signed({'id': 'ch_async_1', 'outcome': 'refunded'})

        assert webhook_orchestrator.handle_webhook('stripe', body, headers) is None

    @pytest.mark.parametrize('body', [b'[1, 2]', b'not json'])
    def test_payload_must_be_an_object(self, webhook_orchestrator, body):
        with pytest.raises(ValidationError) as exc_info:
            webhook_orchestrator.handle_webhook('stripe', body, {'HTTP_X_WEBHOOK_SIGNATURE': sign(body)})

        assert exc_info.value.code == 'INVALID_PAYLOAD'

    def test_unsupported_gateway(self, orchestrator):
        body, headers = signed({'id': 'x', 'outcome': 'succeeded'})

        with pytest.raises(ValidationError) as exc_info:
            orchestrator.handle_webhook('bitcoin', body, headers)

        assert exc_info.value.code == 'UNSUPPORTED_GATEWAY'
