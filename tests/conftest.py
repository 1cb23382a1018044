"""
Shared fixtures for all tests.

factory-boy factories live here so both unit/ and integration/ can import them.
"""
import uuid
from datetime import timedelta
from decimal import Decimal

import factory
import pytest
from django.contrib.auth import get_user_model
from django.utils import timezone
from rest_framework.test import APIClient

from rxorders.exceptions import ExternalServiceError
from rxorders.models import (
    AccountRole,
    OCRJob,
    PatientProfile,
    PaymentAttempt,
    PaymentLink,
    PharmacistReview,
    PrescriptionOrder,
    ROLE_DOCTOR,
    ROLE_PATIENT,
    ROLE_PHARMACIST,
    ROLE_SYSTEM,
)
from rxorders.ocr.base import BaseOCRService
from rxorders.ocr.pipeline import OCRPipeline
from rxorders.ocr.types import OCRResult
from rxorders.payments.base import BaseGatewayAdapter
from rxorders.payments.orchestrator import PaymentOrchestrator
from rxorders.payments.types import GatewayResult, WebhookEvent
from rxorders.repository import OrderRepository
from rxorders.review import ReviewWorkflow
from rxorders.state_machine import OrderStateMachine


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

class UserFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = get_user_model()

    username = factory.Sequence(lambda n: f'user{n}')
    email = factory.LazyAttribute(lambda o: f'{o.username}@example.com')


class AccountRoleFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = AccountRole

    user = factory.SubFactory(UserFactory)
    role = ROLE_PATIENT


class PatientProfileFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = PatientProfile

    patient_name = factory.Sequence(lambda n: f'Patient {n}')
    phone_number = factory.Sequence(lambda n: f'+2299610{n:04d}')
    email = factory.Sequence(lambda n: f'patient{n}@example.com')


class PrescriptionOrderFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = PrescriptionOrder

    patient_profile_id = factory.LazyFunction(lambda: str(uuid.uuid4()))
    original_image_url = 'https://storage.example.com/prescriptions/rx-001.jpg'
    status = 'pending_verification'
    ocr_status = 'pending'

    class Params:
        # 已经走到药剂师审核之后的订单：OCR 完成、有价格
        reviewed = factory.Trait(
            ocr_status='completed',
            extracted_text='Rx: Amoxicillin 500mg\nQty: 30',
            medication_details={'name': 'Amoxicillin', 'dosage': '500mg', 'quantity': 30},
            cost=Decimal('45.50'),
        )


class OCRJobFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = OCRJob

    order = factory.SubFactory(PrescriptionOrderFactory)
    image_url = factory.LazyAttribute(lambda o: o.order.original_image_url)
    status = 'processing'


class PharmacistReviewFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = PharmacistReview

    order = factory.SubFactory(PrescriptionOrderFactory)
    reviewed_by = 'pharmacist1'
    approved = True
    calculated_cost = Decimal('45.50')


class PaymentAttemptFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = PaymentAttempt

    order = factory.SubFactory(PrescriptionOrderFactory, status='awaiting_payment', reviewed=True)
    gateway = 'stripe'
    amount = Decimal('45.50')
    currency = 'XOF'
    status = 'succeeded'
    transaction_id = factory.Sequence(lambda n: f'ch_test_{n}')


class PaymentLinkFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = PaymentLink

    order = factory.SubFactory(PrescriptionOrderFactory, status='awaiting_payment', reviewed=True)
    token = factory.Sequence(lambda n: f'link-token-{n:040d}')
    recipient_phone = '+22997001122'
    message_type = 'whatsapp'
    expires_at = factory.LazyFunction(lambda: timezone.now() + timedelta(hours=24))


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeOCRService(BaseOCRService):
    """extract() 返回预设结果，或者抛出预设异常。"""

    provider = 'fake'

    def __init__(self, text='Rx: Amoxicillin 500mg\nQty: 30', confidence=0.92, error=None):
        self.text = text
        self.confidence = confidence
        self.error = error
        self.calls = []

    def extract(self, image_url):
        self.calls.append(image_url)
        if self.error:
            raise ExternalServiceError(self.error)
        return OCRResult(text=self.text, confidence=self.confidence, provider=self.provider)


class FakeGateway(BaseGatewayAdapter):
    """按预设结果返回的支付渠道，记录每次 charge 请求。"""

    gateway = 'stripe'

    def __init__(self, result=None, error=None):
        self.result = result or GatewayResult(success=True, transaction_id='ch_fake_1', raw={'id': 'ch_fake_1'})
        self.error = error
        self.requests = []

    def collect_errors(self, payment_data):
        return []

    def charge(self, request):
        self.requests.append(request)
        if self.error:
            raise self.error
        return self.result

    def parse_webhook(self, payload):
        if not payload.get('id') or payload.get('outcome') not in ('succeeded', 'failed'):
            return None
        return WebhookEvent(transaction_id=payload['id'], outcome=payload['outcome'], event_type='fake')


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def repository():
    return OrderRepository()


@pytest.fixture
def state_machine(repository):
    return OrderStateMachine(repository)


@pytest.fixture
def dispatched():
    """OCRPipeline 派发的 (order_id, job_id) 记录。"""
    return []


@pytest.fixture
def pipeline(repository, state_machine, dispatched):
    return OCRPipeline(repository, state_machine, dispatch=lambda order_id, job_id: dispatched.append((order_id, job_id)))


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def orchestrator(repository):
    """使用真实的 sandbox 渠道。"""
    return PaymentOrchestrator(repository)


@pytest.fixture
def review(repository, state_machine):
    return ReviewWorkflow(repository, state_machine)


@pytest.fixture
def valid_card():
    return {
        'cardNumber': '4242 4242 4242 4242',
        'expiryDate': '12/2099',
        'cvv': '123',
        'cardholderName': 'Awa Dossou',
    }


def _client_for(role):
    account = AccountRoleFactory(role=role)
    client = APIClient()
    client.force_authenticate(user=account.user)
    client.user = account.user
    return client


@pytest.fixture
def api_client():
    """未登录的 client。"""
    return APIClient()


@pytest.fixture
def patient_client(db):
    return _client_for(ROLE_PATIENT)


@pytest.fixture
def pharmacist_client(db):
    return _client_for(ROLE_PHARMACIST)


@pytest.fixture
def doctor_client(db):
    return _client_for(ROLE_DOCTOR)


@pytest.fixture
def system_client(db):
    return _client_for(ROLE_SYSTEM)
