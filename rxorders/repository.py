"""
OrderRepository — PrescriptionOrder 的持久化契约，按 orderId 寻址。

所有组件（状态机 / OCR / 支付 / 审核）都通过构造函数注入这个对象，
不直接碰 ORM 的写操作。

并发模型：乐观锁。update() 用 version 做 compare-and-set，
别人先写了就抛 ConflictError，调用方重新读取后重试。
"""

import logging

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db.models import F
from django.utils import timezone

from .exceptions import ConflictError, NotFoundError
from .models import (
    OrderAuditEntry,
    PAYMENT_PENDING,
    PAYMENT_SUCCEEDED,
    PaymentAttempt,
    PrescriptionOrder,
)

logger = logging.getLogger(__name__)


class OrderRepository:

    model = PrescriptionOrder

    def create(self, **fields) -> PrescriptionOrder:
        order = self.model.objects.create(**fields)
        logger.info('[Repository] created order %s (status=%s)', order.id, order.status)
        return order

    def get(self, order_id) -> PrescriptionOrder:
        try:
            return self.model.objects.get(id=order_id)
        except (self.model.DoesNotExist, ValueError, DjangoValidationError):
            # order_id 不是合法 UUID 时 Django 抛 ValidationError
            raise NotFoundError(
                message='Order not found',
                code='ORDER_NOT_FOUND',
                detail={'order_id': str(order_id)},
            )

    def update(self, order, expected_version=None, **changes) -> PrescriptionOrder:
        """
        Compare-and-set 写入。

        expected_version 默认取内存里 order.version（即调用方读到的版本）。
        成功后原地更新 order 并返回它。
        """
        if expected_version is None:
            expected_version = order.version

        now = timezone.now()
        updated = self.model.objects.filter(id=order.id, version=expected_version).update(
            version=F('version') + 1,
            updated_at=now,
            **changes,
        )
        if updated == 0:
            logger.warning(
                '[Repository] version conflict on order %s (expected version %s)',
                order.id, expected_version,
            )
            raise ConflictError(
                message='Order was modified by another request. Reload and retry.',
                detail={'order_id': str(order.id), 'expected_version': expected_version},
            )

        for field, value in changes.items():
            setattr(order, field, value)
        order.version = expected_version + 1
        order.updated_at = now
        return order

    def refresh(self, order) -> PrescriptionOrder:
        return self.get(order.id)

    def list_by_patient(self, patient_profile_id, status=None):
        qs = self.model.objects.filter(patient_profile_id=patient_profile_id)
        if status:
            qs = qs.filter(status=status)
        return qs.order_by('-created_at')

    def list_by_status(self, *statuses, oldest_first=False):
        qs = self.model.objects.filter(status__in=statuses)
        return qs.order_by('created_at' if oldest_first else '-created_at')

    # ── payments ──────────────────────────────────────────────────────────

    def succeeded_payment(self, order):
        return PaymentAttempt.objects.filter(order_id=order.id, status=PAYMENT_SUCCEEDED).first()

    def has_succeeded_payment(self, order) -> bool:
        return PaymentAttempt.objects.filter(order_id=order.id, status=PAYMENT_SUCCEEDED).exists()

    def has_pending_payment(self, order) -> bool:
        return PaymentAttempt.objects.filter(order_id=order.id, status=PAYMENT_PENDING).exists()

    def payments(self, order):
        return PaymentAttempt.objects.filter(order_id=order.id).order_by('-created_at')

    # ── audit log ─────────────────────────────────────────────────────────

    def append_audit(self, order, from_status, to_status, actor, outcome, error_code=None, message=''):
        return OrderAuditEntry.objects.create(
            order_id=order.id,
            from_status=from_status,
            to_status=to_status,
            actor=actor,
            outcome=outcome,
            error_code=error_code,
            message=message,
        )

    def audit_trail(self, order):
        return OrderAuditEntry.objects.filter(order_id=order.id).order_by('created_at', 'id')
