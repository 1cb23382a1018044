import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.utils import timezone

from .exceptions import BaseAppException, ExternalServiceError

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=10,   # 初始重试延迟（秒），指数退避会乘以 2^retry_count
    acks_late=True,           # 任务执行完才 ack，防止 worker 崩溃时任务丢失
    reject_on_worker_lost=True,
)
def run_ocr_extraction(self, order_id: str, job_id: str):
    """
    异步执行 OCR。

    重试策略：
      - 只对 ExternalServiceError（provider 不可用 / 没识别出文字）重试
      - 最多重试 3 次，指数退避：10s → 20s → 40s
      - 超出次数后 job 标记为 failed，患者可以手动输入
    无论成功失败，最后都调一次 poll_status 把结果同步到订单上。
    """
    from rxorders.models import OCRJob
    from rxorders.ocr.factory import get_ocr_service
    from rxorders.services import build_ocr_pipeline

    logger.info("[Celery][run_ocr_extraction] 开始处理 order_id=%s job_id=%s (attempt %d/%d)",
                order_id, job_id, self.request.retries + 1, self.max_retries + 1)

    pipeline = build_ocr_pipeline()
    try:
        job = pipeline.mark_job_processing(job_id)
    except OCRJob.DoesNotExist:
        logger.error("[Celery] OCRJob %s 不存在，跳过", job_id)
        return  # 不重试，直接结束

    if job.is_terminal:
        logger.info("[Celery] job %s 已经有结果，跳过", job_id)
        return

    try:
        service = get_ocr_service()
        result = service.extract(job.image_url)
        logger.info("[Celery] OCR 返回成功，confidence=%s，文本长度=%d", result.confidence, len(result.text))
        pipeline.record_result(job_id, text=result.text, confidence=result.confidence, provider=result.provider)

    except ExternalServiceError as exc:
        logger.warning(
            "[Celery] job_id=%s OCR 失败 (attempt %d): %s",
            job_id, self.request.retries + 1, exc.message
        )

        if self.request.retries < self.max_retries:
            # 指数退避：countdown = 10 * 2^retries → 10s, 20s, 40s
            countdown = self.default_retry_delay * (2 ** self.request.retries)
            logger.info(
                "[Celery] 将在 %ds 后重试 (第 %d 次)...",
                countdown, self.request.retries + 1
            )
            raise self.retry(exc=exc, countdown=countdown)

        logger.error("[Celery] job_id=%s 已达最大重试次数，标记为 failed", job_id)
        pipeline.record_result(job_id, error=f"[retried {self.max_retries} times] {exc.message}")

    pipeline.poll_status(order_id)


@shared_task
def poll_processing_orders():
    """
    beat 定时调用：
      1. 超时还没结果的 OCR job 标记为失败
      2. 对仍在 processing 的订单调一次 poll_status（幂等，只同步新出现的终态结果）
    """
    from rxorders.models import OCR_PROCESSING, PrescriptionOrder
    from rxorders.services import build_ocr_pipeline

    pipeline = build_ocr_pipeline()
    cutoff = timezone.now() - timedelta(seconds=settings.OCR_JOB_TIMEOUT_SECONDS)
    expired = pipeline.expire_stale_jobs(cutoff)
    if expired:
        logger.warning("[Celery][poll_processing_orders] %d 个 OCR job 超时", expired)

    order_ids = list(
        PrescriptionOrder.objects.filter(ocr_status=OCR_PROCESSING).values_list('id', flat=True)
    )
    for order_id in order_ids:
        try:
            pipeline.poll_status(order_id)
        except BaseAppException as exc:
            # 一个订单同步失败（例如并发冲突）不影响其他订单，下一轮再试
            logger.warning("[Celery] poll_status(%s) failed: %s %s", order_id, exc.code, exc.message)

    return {'expired': expired, 'polled': len(order_ids)}


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=10,
    acks_late=True,
)
def send_status_notification(self, order_id: str, status: str):
    """订单状态变化后通知患者。消息渠道不可用时指数退避重试。"""
    from rxorders.services import notify_status_change

    try:
        notify_status_change(order_id, status)
    except ExternalServiceError as exc:
        if self.request.retries < self.max_retries:
            countdown = self.default_retry_delay * (2 ** self.request.retries)
            logger.warning("[Celery] 通知 order_id=%s 失败，%ds 后重试: %s", order_id, countdown, exc.message)
            raise self.retry(exc=exc, countdown=countdown)
        logger.error("[Celery] 通知 order_id=%s 已达最大重试次数，放弃: %s", order_id, exc.message)


@shared_task
def expire_stale_payments():
    """beat 定时调用：pending 超时的扣款标记为 failed，释放订单的付款占位。"""
    from rxorders.services import build_payment_orchestrator

    cutoff = timezone.now() - timedelta(seconds=settings.PAYMENT_PENDING_TIMEOUT_SECONDS)
    expired = build_payment_orchestrator().expire_stale_attempts(cutoff)
    if expired:
        logger.warning("[Celery][expire_stale_payments] %d 个扣款超时", expired)
    return {'expired': expired}


@shared_task
def cleanup_expired_payment_links():
    """beat 定时调用：删掉过期且没用过的付款链接。"""
    from rxorders.services import cleanup_expired_links

    return {'deleted': cleanup_expired_links()}
