"""
业务服务层：组件装配 + 患者 / 医生侧的用例。

View 层只调用这里的函数或 build_* 返回的组件，
抛出的 BaseAppException 由 exception_handler 统一兜底。
"""

import logging
import secrets
import uuid
from datetime import timedelta

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from .exceptions import (
    InvalidTransitionError,
    NotFoundError,
    TerminalStateError,
    ValidationError,
)
from .messaging import CHANNELS, get_messaging_service
from .models import (
    AWAITING_PAYMENT,
    AWAITING_VERIFICATION,
    DELIVERED,
    OCR_COMPLETED,
    OUT_FOR_DELIVERY,
    PAYMENT_SUCCEEDED,
    PENDING_VERIFICATION,
    PREPARING,
    PatientProfile,
    PaymentLink,
    REJECTED,
    ROLE_DOCTOR,
)
from .ocr.pipeline import OCRPipeline, validate_image_reference
from .payments.orchestrator import PaymentOrchestrator
from .repository import OrderRepository
from .review import ReviewWorkflow, validate_medication_details
from .state_machine import APPLIED, OrderStateMachine, is_terminal

logger = logging.getLogger(__name__)


# ── 组件装配 ──────────────────────────────────────────────────────────────

def build_repository():
    return OrderRepository()


def build_state_machine(repository=None):
    return OrderStateMachine(repository or build_repository())


def build_ocr_pipeline(repository=None, dispatch=None):
    repository = repository or build_repository()
    return OCRPipeline(repository, build_state_machine(repository), dispatch=dispatch)


def build_payment_orchestrator(repository=None, gateway_factory=None):
    return PaymentOrchestrator(repository or build_repository(), gateway_factory=gateway_factory)


def build_review_workflow(repository=None):
    repository = repository or build_repository()
    return ReviewWorkflow(repository, build_state_machine(repository))


# ── Patient ───────────────────────────────────────────────────────────────

def create_order(patient_profile_id, original_image_url, status=None, pipeline=None):
    """
    上传处方：建订单并提交 OCR。
    新订单只能是 pending_verification，传别的 status 直接拒绝。
    """
    if not str(patient_profile_id or '').strip():
        raise ValidationError('patientProfileId is required', code='MISSING_PATIENT_PROFILE')
    if status is not None and status != PENDING_VERIFICATION:
        raise ValidationError(
            f"New orders must start in '{PENDING_VERIFICATION}'",
            code='INVALID_INITIAL_STATUS',
            detail={'status': status},
        )
    validate_image_reference(original_image_url)

    pipeline = pipeline or build_ocr_pipeline()
    order = pipeline.repository.create(
        patient_profile_id=str(patient_profile_id).strip(),
        original_image_url=original_image_url.strip(),
        status=PENDING_VERIFICATION,
    )
    pipeline.submit(order.id, order.original_image_url)
    return pipeline.repository.refresh(order)


def verify_order(order_id, notes=None, medication_details=None, repository=None):
    """患者核对 OCR 结果。不是状态迁移，只记录 user_verified。"""
    repository = repository or build_repository()
    order = repository.get(order_id)

    if is_terminal(order.status):
        raise TerminalStateError(
            message=f'Order is {order.status}; it can no longer be verified',
            detail={'order_id': str(order.id)},
        )
    if order.status != AWAITING_VERIFICATION:
        raise InvalidTransitionError(
            message=f"Order is '{order.status}'; verification is only possible in '{AWAITING_VERIFICATION}'",
            code='VERIFY_NOT_ALLOWED',
            detail={'order_id': str(order.id), 'current_status': order.status},
        )

    changes = {'user_verified': True, 'user_verification_notes': notes}
    if medication_details is not None:
        changes['medication_details'] = validate_medication_details(medication_details).to_dict()
    repository.update(order, **changes)
    logger.info('[Order] order %s verified by patient', order.id)
    return order


# ── Doctor ────────────────────────────────────────────────────────────────

def search_patients(query, search_type='all', limit=10):
    """按姓名 / 电话 / 邮箱搜索病人。query 为空返回空列表。"""
    query = (query or '').strip()
    if not query:
        return []

    filters = {
        'name': Q(patient_name__icontains=query),
        'phone': Q(phone_number=query),
        'email': Q(email__iexact=query),
    }
    if search_type == 'all':
        condition = filters['name'] | filters['phone'] | filters['email']
    elif search_type in filters:
        condition = filters[search_type]
    else:
        raise ValidationError(
            f'Unknown searchType: {search_type!r}',
            code='INVALID_SEARCH_TYPE',
            detail={'allowed': ['all', *filters.keys()]},
        )

    limit = max(1, min(int(limit), 50))
    return list(PatientProfile.objects.filter(condition).order_by('patient_name')[:limit])


def _prescription_text(details, notes=None):
    lines = [f"Rx: {details.name} {details.dosage}", f"Qty: {details.quantity}"]
    if notes:
        lines.append(f"Notes: {notes}")
    return '\n'.join(lines)


def submit_doctor_prescription(doctor, patient_profile_id, medication_details, notes=None, repository=None):
    """
    医生直接开方：没有图片也不走 OCR，订单直接进入 awaiting_verification，
    等药剂师审核。审计日志里记一条 actor=doctor 的迁移。
    """
    repository = repository or build_repository()
    details = validate_medication_details(medication_details)

    try:
        patient = PatientProfile.objects.get(id=patient_profile_id)
    except (PatientProfile.DoesNotExist, ValueError, DjangoValidationError):
        raise NotFoundError(
            message='Patient profile not found',
            code='PATIENT_NOT_FOUND',
            detail={'patient_profile_id': str(patient_profile_id)},
        )

    now = timezone.now()
    with transaction.atomic():
        order = repository.create(
            patient_profile_id=str(patient.id),
            status=AWAITING_VERIFICATION,
            source='doctor',
            ocr_status=OCR_COMPLETED,
            extracted_text=_prescription_text(details, notes),
            ocr_processed_at=now,
            medication_details=details.to_dict(),
            user_verified=True,
            user_verification_notes=notes,
        )
        repository.append_audit(
            order, PENDING_VERIFICATION, AWAITING_VERIFICATION, ROLE_DOCTOR, APPLIED,
            message=f'Submitted by doctor {doctor}',
        )
    logger.info('[Doctor] %s submitted prescription order %s for patient %s', doctor, order.id, patient.id)
    return order


# ── Payment link ──────────────────────────────────────────────────────────

def payment_link_url(link):
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/pay/{link.token}"


def request_payment_link(order_id, recipient_phone, message_type='whatsapp', repository=None, messenger=None):
    """
    给第三方（家属等）发一个付款链接。只在 awaiting_payment 时可用。

    Raises:
        ValidationError / TerminalStateError / InvalidTransitionError
        ExternalServiceError: 消息渠道不可用（链接已经生成，可以重发）
    """
    repository = repository or build_repository()
    recipient_phone = (recipient_phone or '').strip()
    if not recipient_phone:
        raise ValidationError('recipientPhone is required', code='MISSING_RECIPIENT')
    if message_type not in CHANNELS:
        raise ValidationError(
            f'Unsupported messageType: {message_type!r}',
            code='INVALID_MESSAGE_TYPE',
            detail={'allowed': list(CHANNELS)},
        )

    order = repository.get(order_id)
    if is_terminal(order.status):
        raise TerminalStateError(
            message=f'Order is {order.status}; it can no longer be paid',
            detail={'order_id': str(order.id)},
        )
    if order.status != AWAITING_PAYMENT:
        raise InvalidTransitionError(
            message=f"Order is '{order.status}'; payment links are only available in '{AWAITING_PAYMENT}'",
            code='ORDER_NOT_PAYABLE',
            detail={'order_id': str(order.id), 'current_status': order.status},
        )

    link = PaymentLink.objects.create(
        order=order,
        token=secrets.token_urlsafe(32),
        recipient_phone=recipient_phone,
        message_type=message_type,
        expires_at=timezone.now() + timedelta(hours=settings.PAYMENT_LINK_TTL_HOURS),
    )
    message = (
        f"You have been asked to pay for a prescription order ({order.cost} "
        f"{settings.PAYMENT_DEFAULT_CURRENCY}). Pay securely here: {payment_link_url(link)} "
        f"(link expires in {settings.PAYMENT_LINK_TTL_HOURS} hours)"
    )
    (messenger or get_messaging_service()).send(recipient_phone, message, message_type)
    logger.info('[PaymentLink] link %s sent for order %s via %s', link.id, order.id, message_type)
    return link



def get_payment_link(token) -> PaymentLink:
    link = PaymentLink.objects.select_related('order').filter(token=token).first() if token else None
    if link is None:
        raise NotFoundError('Payment link not found', code='PAYMENT_LINK_NOT_FOUND')
    return link


def payment_link_state(link, now=None) -> dict:
    """链接能不能用。已使用优先于已过期。"""
    now = now or timezone.now()
    if link.is_used:
        return {'isValid': False, 'isExpired': False, 'isUsed': True,
                'error': 'This payment link has already been used'}
    if link.expires_at < now:
        return {'isValid': False, 'isExpired': True, 'isUsed': False,
                'error': 'This payment link has expired'}
    return {'isValid': True, 'isExpired': False, 'isUsed': False, 'error': None}


def get_usable_payment_link(token) -> PaymentLink:
    """
    Raises:
        NotFoundError:   token 不存在
        ValidationError: 链接已使用（PAYMENT_LINK_USED）或已过期（PAYMENT_LINK_EXPIRED）
    """
    link = get_payment_link(token)
    state = payment_link_state(link)
    if not state['isValid']:
        raise ValidationError(
            state['error'],
            code='PAYMENT_LINK_USED' if state['isUsed'] else 'PAYMENT_LINK_EXPIRED',
            detail={'expires_at': link.expires_at.isoformat()},
        )
    return link


def mark_payment_link_used(link) -> bool:
    """只有第一次调用生效。返回这次是否真的标记了。"""
    now = timezone.now()
    updated = PaymentLink.objects.filter(id=link.id, is_used=False).update(is_used=True, used_at=now)
    if updated:
        link.is_used, link.used_at = True, now
    return bool(updated)


def pay_with_link(token, gateway, amount, currency=None, payment_data=None, orchestrator=None):
    """
    第三方通过付款链接付款，不需要登录。
    扣款本身走 PaymentOrchestrator.charge()，规则和患者自己付款完全一样；
    付款成功（或订单之前已经付过）后链接作废。
    """
    link = get_usable_payment_link(token)
    orchestrator = orchestrator or build_payment_orchestrator()
    attempt = orchestrator.charge(link.order_id, gateway, amount, currency, payment_data or {})
    if attempt.status == PAYMENT_SUCCEEDED:
        mark_payment_link_used(link)
        logger.info('[PaymentLink] link %s used to pay order %s', link.id, link.order_id)
    return attempt


def cleanup_expired_links(now=None) -> int:
    """删除过期且没用过的链接，返回删除的数量。用过的链接留着对账。"""
    now = now or timezone.now()
    deleted, _ = PaymentLink.objects.filter(expires_at__lt=now, is_used=False).delete()
    if deleted:
        logger.info('[PaymentLink] removed %d expired links', deleted)
    return deleted


# ── Notifications ─────────────────────────────────────────────────────────

STATUS_MESSAGES = {
    AWAITING_PAYMENT: 'Your prescription has been approved. Amount due: {cost}. Please complete payment.',
    PREPARING: 'Payment received. Your medication is being prepared.',
    OUT_FOR_DELIVERY: 'Your medication is on its way.',
    DELIVERED: 'Your medication has been delivered. Thank you!',
    REJECTED: 'Your prescription could not be approved: {reason}',
}


def status_notification_message(order, status):
    template = STATUS_MESSAGES.get(status)
    if template is None:
        return None
    review = order.latest_review
    reason = (review.rejection_reason if review else None) or 'please contact the pharmacy'
    return template.format(cost=order.cost, reason=reason)


def notify_status_change(order_id, status, repository=None, messenger=None):
    """给患者发订单状态通知。找不到联系方式时静默跳过。"""
    repository = repository or build_repository()
    order = repository.get(order_id)
    message = status_notification_message(order, status)
    if message is None:
        return None

    patient = PatientProfile.objects.filter(id=order.patient_profile_id).first() \
        if _is_uuid(order.patient_profile_id) else None
    if patient is None or not patient.phone_number:
        logger.info('[Notify] no phone number for order %s, skipping', order.id)
        return None

    return (messenger or get_messaging_service()).send(patient.phone_number, message, 'sms')


def _is_uuid(value):
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True
