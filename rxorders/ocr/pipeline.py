"""
OCRPipeline — 提交识别任务、轮询结果、手动输入兜底。

流程：
  submit()          校验图片 → 建 OCRJob → order.ocr_status=processing → 事务提交后派发 Celery 任务
  record_result()   Celery 任务把 provider 的结果写到 OCRJob 上
  poll_status()     幂等、非阻塞。发现 job 有了终态结果而订单还没同步时，写回订单：
                      completed → extracted_text / ocr_confidence / medication_details，
                                  并推进 pending_verification → awaiting_verification
                      failed    → ocr_error，medication_details 不动
  enter_manual_text()  OCR 失败 / 超时 / 需要更正时的手动输入路径

置信度只用于前端提示，流水线不会因为置信度低而自动拒绝。
"""

import logging
from typing import Callable, Optional
from urllib.parse import urlparse

from django.db import transaction
from django.utils import timezone

from ..exceptions import (
    InvalidImageError,
    InvalidTransitionError,
    TerminalStateError,
    ValidationError,
)
from ..models import (
    AWAITING_VERIFICATION,
    OCR_COMPLETED,
    OCR_FAILED,
    OCR_PENDING,
    OCR_PROCESSING,
    OCRJob,
    PENDING_VERIFICATION,
    ROLE_PATIENT,
    ROLE_SYSTEM,
)
from ..state_machine import is_terminal
from ..types import OCRStatusView
from .extraction import extract_medication_details

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.pdf')
SUPPORTED_DATA_TYPES = ('data:image/jpeg', 'data:image/jpg', 'data:image/png', 'data:application/pdf')

# 这些订单状态下允许手动输入 / 更正文本（药剂师做出决定之前）
PRE_REVIEW_STATUSES = (PENDING_VERIFICATION, AWAITING_VERIFICATION)


def validate_image_reference(image_url) -> None:
    """空 / 协议不对 / 格式不支持 → InvalidImageError。"""
    errors = []
    image_url = (image_url or '').strip()

    if not image_url:
        raise InvalidImageError('Image URL is required', detail={'errors': ['Image URL is required']})

    parsed = urlparse(image_url)
    if parsed.scheme not in ('http', 'https', 'data'):
        errors.append('Image URL must use HTTP, HTTPS, or data URI protocol')
    elif parsed.scheme == 'data':
        if not image_url.lower().startswith(SUPPORTED_DATA_TYPES):
            errors.append('Data URI must be in JPG, PNG, or PDF format')
    else:
        if not parsed.netloc:
            errors.append('Invalid image URL format')
        if not parsed.path.lower().endswith(SUPPORTED_EXTENSIONS):
            errors.append('Image must be in JPG, PNG, or PDF format')

    if errors:
        raise InvalidImageError(
            message=f"Invalid image for OCR: {', '.join(errors)}",
            detail={'errors': errors},
        )


def _default_dispatch(order_id, job_id):
    from rxorders.tasks import run_ocr_extraction
    run_ocr_extraction.delay(order_id, job_id)


class OCRPipeline:

    def __init__(self, repository, state_machine, dispatch: Optional[Callable] = None):
        self.repository = repository
        self.state_machine = state_machine
        # dispatch(order_id, job_id)：默认走 Celery，测试里可以注入
        self.dispatch = dispatch or _default_dispatch

    # ── Submit ────────────────────────────────────────────────────────────

    def submit(self, order_id, image_url) -> OCRJob:
        """登记一个异步识别任务，返回 job（job.id 就是 jobHandle）。"""
        validate_image_reference(image_url)
        order = self.repository.get(order_id)
        if is_terminal(order.status):
            raise TerminalStateError(
                message=f'Order is {order.status}; OCR cannot be submitted',
                detail={'order_id': str(order.id)},
            )

        with transaction.atomic():
            job = OCRJob.objects.create(order=order, image_url=image_url.strip())
            self.repository.update(order, ocr_status=OCR_PROCESSING, ocr_error=None)

        job_id, oid = str(job.id), str(order.id)
        transaction.on_commit(lambda: self.dispatch(oid, job_id))
        logger.info('[OCR] submitted job %s for order %s', job_id, oid)
        return job

    # ── Called by the worker ──────────────────────────────────────────────

    def mark_job_processing(self, job_id) -> OCRJob:
        job = OCRJob.objects.get(id=job_id)
        if not job.is_terminal:
            job.status = OCR_PROCESSING
            job.attempts += 1
            job.save(update_fields=['status', 'attempts'])
        return job

    def record_result(self, job_id, *, text=None, confidence=None, provider='', error=None) -> OCRJob:
        """把 provider 的结果写到 OCRJob 上。已经是终态的 job 不会被覆盖。"""
        job = OCRJob.objects.get(id=job_id)
        if job.is_terminal:
            return job

        job.processed_at = timezone.now()
        job.provider = provider or job.provider
        if error:
            job.status = OCR_FAILED
            job.error = error
        else:
            job.status = OCR_COMPLETED
            job.extracted_text = text
            job.confidence = confidence
        job.save(update_fields=['status', 'error', 'extracted_text', 'confidence', 'provider', 'processed_at'])
        logger.info('[OCR] job %s finished with status=%s', job.id, job.status)
        return job

    # ── Poll ──────────────────────────────────────────────────────────────

    def latest_job(self, order) -> Optional[OCRJob]:
        return order.ocr_jobs.order_by('-created_at').first()

    def poll_status(self, order_id) -> OCRStatusView:
        order = self.repository.get(order_id)
        job = self.latest_job(order)

        if job is not None and job.is_terminal and order.ocr_status in (OCR_PENDING, OCR_PROCESSING):
            order = self._reconcile(order, job)

        return OCRStatusView(
            status=order.ocr_status,
            extracted_text=order.extracted_text,
            confidence=order.ocr_confidence,
            error=order.ocr_error,
            processed_at=order.ocr_processed_at.isoformat() if order.ocr_processed_at else None,
        )

    def _reconcile(self, order, job):
        """把新观察到的终态结果写回订单（只发生一次）。"""
        if job.status == OCR_FAILED:
            self.repository.update(
                order,
                ocr_status=OCR_FAILED,
                ocr_error=job.error or 'Unknown OCR processing error',
                ocr_processed_at=job.processed_at,
            )
            logger.warning('[OCR] order %s OCR failed: %s', order.id, order.ocr_error)
            return order

        changes = {
            'ocr_status': OCR_COMPLETED,
            'extracted_text': job.extracted_text,
            'ocr_confidence': job.confidence,
            'ocr_error': None,
            'ocr_processed_at': job.processed_at,
        }
        if order.medication_details is None:
            details = extract_medication_details(job.extracted_text)
            if not details.is_empty():
                changes['medication_details'] = details.to_dict()
        order = self._write_text(order, changes, ROLE_SYSTEM)
        logger.info('[OCR] order %s OCR completed (confidence=%s)', order.id, job.confidence)
        return order

    def _write_text(self, order, changes, actor):
        """
        写入识别 / 手动输入的文本。订单还在 pending_verification 时，
        文本和 -> awaiting_verification 的迁移是同一次 compare-and-set 写入：
        迁移失败则文本也不落库，下一次 poll 会重新同步。
        """
        if order.status != PENDING_VERIFICATION:
            return self.repository.update(order, **changes)
        return self.state_machine.transition(
            order,
            AWAITING_VERIFICATION,
            actor,
            context={'ocr_status': changes['ocr_status']},
            apply=lambda _order: changes,
        )

    # ── Manual fallback ───────────────────────────────────────────────────

    def enter_manual_text(self, order_id, text, actor=ROLE_PATIENT):
        text = (text or '').strip()
        if not text:
            raise ValidationError('Extracted text is required', code='EMPTY_TEXT')

        order = self.repository.get(order_id)
        if is_terminal(order.status):
            raise TerminalStateError(
                message=f'Order is {order.status}; text can no longer be changed',
                detail={'order_id': str(order.id)},
            )
        ocr_unfinished = order.ocr_status in (OCR_FAILED, OCR_PENDING, OCR_PROCESSING)
        if not ocr_unfinished and order.status not in PRE_REVIEW_STATUSES:
            raise InvalidTransitionError(
                message=f'Manual text entry is not allowed while order is {order.status}',
                code='MANUAL_TEXT_NOT_ALLOWED',
                detail={'order_id': str(order.id), 'current_status': order.status},
            )

        changes = {
            'ocr_status': OCR_COMPLETED,
            'extracted_text': text,
            'ocr_error': None,
            'ocr_processed_at': timezone.now(),
        }
        if order.medication_details is None:
            details = extract_medication_details(text)
            if not details.is_empty():
                changes['medication_details'] = details.to_dict()
        order = self._write_text(order, changes, actor)
        logger.info('[OCR] manual text entered for order %s by %s', order.id, actor)
        return order

    # ── Timeouts (driven by the beat task) ────────────────────────────────

    def expire_stale_jobs(self, older_than) -> int:
        """processing 超过时限的 job 标记为失败，引导用户手动输入。返回处理的数量。"""
        stale = OCRJob.objects.filter(status__in=[OCR_PENDING, OCR_PROCESSING], created_at__lt=older_than)
        count = 0
        for job in stale:
            self.record_result(job.id, error='OCR timed out; please enter the prescription text manually')
            count += 1
        return count
