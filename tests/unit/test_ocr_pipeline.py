"""
Unit tests for OCRPipeline.

派发用 conftest 里的 dispatched 列表代替 Celery；
provider 的结果直接通过 record_result() 写入，模拟 worker。
"""
from datetime import timedelta
from unittest.mock import patch

import pytest
from django.utils import timezone

from rxorders.exceptions import (
    ConflictError,
    InvalidImageError,
    InvalidTransitionError,
    TerminalStateError,
    ValidationError,
)
from rxorders.models import OCRJob, OrderAuditEntry, PrescriptionOrder
from rxorders.ocr.pipeline import validate_image_reference
from tests.conftest import OCRJobFactory, PrescriptionOrderFactory

RX_TEXT = 'Rx: Amoxicillin 500mg\nQty: 30'


@pytest.fixture
def processing_order(db):
    order = PrescriptionOrderFactory(ocr_status='processing')
    job = OCRJobFactory(order=order)
    return order, job


# -------------------------------------------------------------------
# Image validation
# -------------------------------------------------------------------

class TestValidateImageReference:

    @pytest.mark.parametrize('url', [
        'https://storage.example.com/rx.jpg',
        'http://storage.example.com/scans/rx.PNG',
        'https://storage.example.com/rx.pdf',
        'data:image/png;base64,iVBORw0KGgo=',
        'data:application/pdf;base64,JVBERi0=',
    ])
    def test_accepted(self, url):
        validate_image_reference(url)

    @pytest.mark.parametrize('url, message', [
        ('', 'Image URL is required'),
        ('   ', 'Image URL is required'),
        ('ftp://storage.example.com/rx.jpg', 'Image URL must use HTTP, HTTPS, or data URI protocol'),
        ('https://storage.example.com/rx.gif', 'Image must be in JPG, PNG, or PDF format'),
        ('data:image/gif;base64,R0lGOD=', 'Data URI must be in JPG, PNG, or PDF format'),
    ])
    def test_rejected(self, url, message):
        with pytest.raises(InvalidImageError) as exc_info:
            validate_image_reference(url)
        assert message in exc_info.value.detail['errors']


# -------------------------------------------------------------------
# Submit
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestSubmit:

    def test_creates_job_and_dispatches_after_commit(self, pipeline, dispatched, django_capture_on_commit_callbacks):
        order = PrescriptionOrderFactory()

        with django_capture_on_commit_callbacks(execute=True):
            job = pipeline.submit(order.id, order.original_image_url)

        assert dispatched == [(str(order.id), str(job.id))]
        assert PrescriptionOrder.objects.get(id=order.id).ocr_status == 'processing'
        assert job.image_url == order.original_image_url

    def test_nothing_dispatched_before_commit(self, pipeline, dispatched):
        order = PrescriptionOrderFactory()

        pipeline.submit(order.id, order.original_image_url)

        assert dispatched == []

    def test_invalid_image_creates_no_job(self, pipeline):
        order = PrescriptionOrderFactory()

        with pytest.raises(InvalidImageError):
            pipeline.submit(order.id, 'https://storage.example.com/rx.bmp')

        assert not OCRJob.objects.exists()
        assert PrescriptionOrder.objects.get(id=order.id).ocr_status == 'pending'

    def test_terminal_order(self, pipeline):
        order = PrescriptionOrderFactory(status='rejected')

        with pytest.raises(TerminalStateError):
            pipeline.submit(order.id, order.original_image_url)

    def test_resubmit_clears_previous_error(self, pipeline):
        order = PrescriptionOrderFactory(ocr_status='failed', ocr_error='timeout')

        pipeline.submit(order.id, order.original_image_url)

        stored = PrescriptionOrder.objects.get(id=order.id)
        assert stored.ocr_status == 'processing'
        assert stored.ocr_error is None


# -------------------------------------------------------------------
# Worker side + poll
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestPollStatus:

    def test_no_job_yet(self, pipeline):
        order = PrescriptionOrderFactory()

        assert pipeline.poll_status(order.id).status == 'pending'

    def test_still_processing(self, pipeline, processing_order):
        order, _ = processing_order

        view = pipeline.poll_status(order.id)

        assert view.status == 'processing'
        assert view.to_dict() == {'status': 'processing'}

    def test_completed_result_is_written_back(self, pipeline, processing_order):
        order, job = processing_order
        pipeline.record_result(job.id, text=RX_TEXT, confidence=0.92, provider='fake')

        view = pipeline.poll_status(order.id)

        assert view.status == 'completed'
        assert view.confidence == 0.92
        assert view.extracted_text == RX_TEXT
        assert view.processed_at is not None

        stored = PrescriptionOrder.objects.get(id=order.id)
        assert stored.status == 'awaiting_verification'
        assert stored.medication_details == {'name': 'Amoxicillin', 'dosage': '500mg', 'quantity': 30}
        entry = OrderAuditEntry.objects.get(order=order)
        assert (entry.from_status, entry.to_status, entry.actor) == (
            'pending_verification', 'awaiting_verification', 'system',
        )

    def test_poll_is_idempotent(self, pipeline, processing_order):
        order, job = processing_order
        pipeline.record_result(job.id, text=RX_TEXT, confidence=0.92)

        pipeline.poll_status(order.id)
        pipeline.poll_status(order.id)

        assert OrderAuditEntry.objects.filter(order=order).count() == 1
        assert PrescriptionOrder.objects.get(id=order.id).version == 2

    def test_conflicting_write_is_reconciled_on_next_poll(self, pipeline, repository, processing_order):
        order, job = processing_order
        pipeline.record_result(job.id, text=RX_TEXT, confidence=0.92)

        with patch.object(repository, 'update', side_effect=ConflictError('Order was modified by another request.')):
            with pytest.raises(ConflictError):
                pipeline.poll_status(order.id)

        stored = PrescriptionOrder.objects.get(id=order.id)
        assert stored.ocr_status == 'processing'
        assert stored.extracted_text is None

        view = pipeline.poll_status(order.id)

        assert view.status == 'completed'
        stored = PrescriptionOrder.objects.get(id=order.id)
        assert stored.status == 'awaiting_verification'
        outcomes = list(OrderAuditEntry.objects.filter(order=order).values_list('outcome', flat=True))
        assert outcomes == ['rejected', 'applied']

    def test_existing_details_are_not_overwritten(self, pipeline):
        details = {'name': 'Ibuprofen', 'dosage': '200mg', 'quantity': 20}
        order = PrescriptionOrderFactory(ocr_status='processing', medication_details=details)
        job = OCRJobFactory(order=order)
        pipeline.record_result(job.id, text=RX_TEXT, confidence=0.9)

        pipeline.poll_status(order.id)

        assert PrescriptionOrder.objects.get(id=order.id).medication_details == details

    def test_failed_result(self, pipeline, processing_order):
        order, job = processing_order
        pipeline.record_result(job.id, error='No text detected in the image')

        view = pipeline.poll_status(order.id)

        assert view.status == 'failed'
        assert view.error == 'No text detected in the image'
        stored = PrescriptionOrder.objects.get(id=order.id)
        assert stored.status == 'pending_verification'
        assert stored.medication_details is None

    def test_terminal_job_is_not_rewritten(self, pipeline, processing_order):
        _, job = processing_order
        pipeline.record_result(job.id, text=RX_TEXT, confidence=0.92)

        job = pipeline.record_result(job.id, error='late failure')

        assert job.status == 'completed'
        assert job.error is None

    def test_mark_job_processing_counts_attempts(self, pipeline, processing_order):
        _, job = processing_order

        pipeline.mark_job_processing(job.id)
        job = pipeline.mark_job_processing(job.id)

        assert job.attempts == 2


# -------------------------------------------------------------------
# Manual text
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestManualText:

    def test_manual_text_after_failure(self, pipeline):
        order = PrescriptionOrderFactory(ocr_status='failed', ocr_error='OCR timed out')

        order = pipeline.enter_manual_text(order.id, '  Rx: Metformin 850mg\n60 tablets  ')

        stored = PrescriptionOrder.objects.get(id=order.id)
        assert stored.status == 'awaiting_verification'
        assert stored.ocr_status == 'completed'
        assert stored.ocr_error is None
        assert stored.extracted_text == 'Rx: Metformin 850mg\n60 tablets'
        assert stored.medication_details == {'name': 'Metformin', 'dosage': '850mg', 'quantity': 60}
        assert OrderAuditEntry.objects.get(order=order).actor == 'patient'

    def test_conflicting_manual_entry_writes_nothing(self, pipeline, repository):
        order = PrescriptionOrderFactory(ocr_status='failed', ocr_error='OCR timed out')

        with patch.object(repository, 'update', side_effect=ConflictError('Order was modified by another request.')):
            with pytest.raises(ConflictError):
                pipeline.enter_manual_text(order.id, 'Rx: Metformin 850mg')

        stored = PrescriptionOrder.objects.get(id=order.id)
        assert stored.status == 'pending_verification'
        assert stored.ocr_status == 'failed'
        assert stored.extracted_text is None

    def test_late_ocr_result_is_ignored(self, pipeline, processing_order):
        order, job = processing_order
        pipeline.enter_manual_text(order.id, 'Rx: Metformin 850mg')

        pipeline.record_result(job.id, text=RX_TEXT, confidence=0.92)
        view = pipeline.poll_status(order.id)

        assert view.extracted_text == 'Rx: Metformin 850mg'
        assert OrderAuditEntry.objects.filter(order=order).count() == 1

    @pytest.mark.parametrize('text', ['', '   ', '\n\t', None])
    def test_blank_text_leaves_order_unchanged(self, pipeline, text):
        order = PrescriptionOrderFactory(ocr_status='failed')

        with pytest.raises(ValidationError) as exc_info:
            pipeline.enter_manual_text(order.id, text)

        assert exc_info.value.code == 'EMPTY_TEXT'
        stored = PrescriptionOrder.objects.get(id=order.id)
        assert stored.ocr_status == 'failed'
        assert stored.version == order.version

    def test_correction_during_verification(self, pipeline):
        order = PrescriptionOrderFactory(status='awaiting_verification', reviewed=True)

        pipeline.enter_manual_text(order.id, 'Rx: Amoxicillin 250mg\nQty: 30')

        stored = PrescriptionOrder.objects.get(id=order.id)
        assert stored.status == 'awaiting_verification'
        assert stored.extracted_text == 'Rx: Amoxicillin 250mg\nQty: 30'
        # 已有的 medication_details 不被覆盖
        assert stored.medication_details['dosage'] == '500mg'

    def test_not_allowed_after_approval(self, pipeline):
        order = PrescriptionOrderFactory(status='awaiting_payment', reviewed=True)

        with pytest.raises(InvalidTransitionError) as exc_info:
            pipeline.enter_manual_text(order.id, 'Rx: Something 1mg')

        assert exc_info.value.code == 'MANUAL_TEXT_NOT_ALLOWED'

    def test_terminal_order(self, pipeline):
        order = PrescriptionOrderFactory(status='delivered', reviewed=True)

        with pytest.raises(TerminalStateError):
            pipeline.enter_manual_text(order.id, 'Rx: Something 1mg')


# -------------------------------------------------------------------
# Timeouts
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestExpireStaleJobs:

    def test_old_jobs_fail_and_new_ones_stay(self, pipeline):
        old = OCRJobFactory()
        fresh = OCRJobFactory()
        OCRJob.objects.filter(id=old.id).update(created_at=timezone.now() - timedelta(hours=1))

        expired = pipeline.expire_stale_jobs(timezone.now() - timedelta(minutes=10))

        assert expired == 1
        old.refresh_from_db()
        fresh.refresh_from_db()
        assert old.status == 'failed'
        assert 'enter the prescription text manually' in old.error
        assert fresh.status == 'processing'

    def test_expired_job_surfaces_on_poll(self, pipeline, processing_order):
        order, job = processing_order
        OCRJob.objects.filter(id=job.id).update(created_at=timezone.now() - timedelta(hours=1))
        pipeline.expire_stale_jobs(timezone.now() - timedelta(minutes=10))

        assert pipeline.poll_status(order.id).status == 'failed'
