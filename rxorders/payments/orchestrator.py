"""
PaymentOrchestrator — 校验支付信息并通过选定渠道扣款。

charge() 对同一订单幂等：
  已有 succeeded attempt → 直接返回它（attempt.already_paid = True）
  否则 → 校验 → 占一个 pending attempt → 调渠道 → succeeded / failed / pending

"至多一次成功扣款" 由 PaymentAttempt 上的条件唯一约束保证
（每个订单至多一个 pending 或 succeeded 的 attempt），
插入 pending attempt 本身就是 compare-and-set。
占 attempt 的同一个事务里订单 version +1，和状态迁移互斥。

渠道异步确认的扣款（pending）由 handle_webhook() 收尾；
卡在 pending 的 attempt 由 beat 任务 expire_stale_attempts() 清理。

不自动重试，也不修改订单状态：付款成功后推进到 preparing 是调用方的事。
"""

import json
import logging
from decimal import Decimal

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from ..exceptions import (
    AlreadyPaidError,
    ConflictError,
    ExternalServiceError,
    GatewayDeclinedError,
    GuardFailedError,
    InvalidTransitionError,
    NotFoundError,
    TerminalStateError,
    ValidationError,
)
from ..models import (
    AWAITING_PAYMENT,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_SUCCEEDED,
    PaymentAttempt,
)
from ..state_machine import is_terminal
from .factory import get_gateway
from .receipts import build_receipt
from .types import ChargeRequest
from .validators import to_decimal, validate_amount_and_currency

logger = logging.getLogger(__name__)

STALE_PAYMENT_MESSAGE = 'Payment was not confirmed in time; please try again'


class PaymentOrchestrator:

    def __init__(self, repository, gateway_factory=None):
        self.repository = repository
        # gateway_factory(name) -> BaseGatewayAdapter；测试里注入假渠道
        self.gateway_factory = gateway_factory or get_gateway

    # ── Validate ──────────────────────────────────────────────────────────

    def validate(self, gateway, payment_data, amount=None, currency=None, expected_amount=None) -> None:
        """
        本地校验，不发网络请求。

        Raises:
            ValidationError: detail={'errors': [{field, message}, ...]}；
                             未知渠道 code=UNSUPPORTED_GATEWAY
        """
        adapter = self.gateway_factory(gateway)
        self._validate_with(adapter, payment_data, amount, currency, expected_amount)

    def _validate_with(self, adapter, payment_data, amount, currency, expected_amount):
        errors = []
        if amount is not None or currency is not None:
            errors.extend(validate_amount_and_currency(amount, currency, expected_amount))
        errors.extend(adapter.collect_errors(payment_data or {}))
        if errors:
            code = 'AMOUNT_MISMATCH' if any(e.get('code') == 'AMOUNT_MISMATCH' for e in errors) \
                else 'INVALID_PAYMENT_DATA'
            raise ValidationError(
                message='Payment validation failed',
                code=code,
                detail={'errors': errors},
            )

    # ── Charge ────────────────────────────────────────────────────────────

    def charge(self, order_id, gateway, amount, currency=None, payment_data=None) -> PaymentAttempt:
        """
        Returns:
            PaymentAttempt，status=succeeded（或渠道异步确认时 pending）。
            attempt.already_paid 表示是否是之前的那次。

        Raises:
            TerminalStateError / InvalidTransitionError / GuardFailedError
            ValidationError       字段不合法，不会产生 attempt
            ConflictError         同一订单已有进行中的扣款，或订单刚被别人改过
            GatewayDeclinedError  渠道拒绝，attempt 记为 failed
            ExternalServiceError  渠道不可达 / 渠道调用出错，attempt 记为 failed
        """
        currency = (currency or settings.PAYMENT_DEFAULT_CURRENCY).upper()
        payment_data = payment_data or {}
        order = self.repository.get(order_id)

        try:
            self._ensure_not_paid(order)
            self._ensure_payable(order)

            adapter = self.gateway_factory(gateway)
            self._validate_with(adapter, payment_data, amount, currency, order.cost)

            attempt = self._claim(order, gateway, to_decimal(amount), currency)
        except AlreadyPaidError as signal:
            logger.info('[Payment] order %s already paid by %s, returning it', order.id, signal.attempt.id)
            signal.attempt.already_paid = True
            return signal.attempt

        return self._execute(adapter, order, attempt, payment_data)

    def _ensure_not_paid(self, order):
        existing = self.repository.succeeded_payment(order)
        if existing is not None:
            raise AlreadyPaidError(existing)

    def _ensure_payable(self, order):
        if is_terminal(order.status):
            raise TerminalStateError(
                message=f'Order is {order.status}; it can no longer be paid',
                detail={'order_id': str(order.id)},
            )
        if order.status != AWAITING_PAYMENT:
            raise InvalidTransitionError(
                message=f"Order is '{order.status}'; payment is only accepted in '{AWAITING_PAYMENT}'",
                code='ORDER_NOT_PAYABLE',
                detail={'order_id': str(order.id), 'current_status': order.status},
            )
        if order.cost is None or order.cost <= 0:
            raise GuardFailedError(
                message='Order has no approved cost yet',
                detail={'order_id': str(order.id)},
            )

    def _claim(self, order, gateway, amount: Decimal, currency) -> PaymentAttempt:
        """
        插入 pending attempt，同时把订单 version +1。
        撞上唯一约束说明已有 pending 或 succeeded；
        version 对不上说明订单在校验之后被改过（例如刚被拒绝），两者都不扣款。
        """
        try:
            with transaction.atomic():
                attempt = PaymentAttempt.objects.create(
                    order_id=order.id,
                    gateway=gateway,
                    amount=amount,
                    currency=currency,
                    status=PAYMENT_PENDING,
                )
                self.repository.update(order)
                return attempt
        except IntegrityError:
            self._ensure_not_paid(order)
            logger.warning('[Payment] order %s already has a charge in flight', order.id)
            raise ConflictError(
                message='A payment for this order is already in progress',
                code='PAYMENT_IN_PROGRESS',
                detail={'order_id': str(order.id)},
            )

    def _execute(self, adapter, order, attempt, payment_data) -> PaymentAttempt:
        request = ChargeRequest(
            order_id=str(order.id),
            amount=attempt.amount,
            currency=attempt.currency,
            payment_data=payment_data,
        )
        try:
            result = adapter.charge(request)
        except ExternalServiceError as exc:
            self._mark_failed(attempt, exc.message, {'error': exc.code, **adapter.sanitize(payment_data)})
            logger.error('[Payment] %s unreachable for order %s: %s', attempt.gateway, order.id, exc.message)
            raise
        except Exception as exc:
            # adapter / SDK 没包装的异常：attempt 不能一直占着 pending
            self._mark_failed(attempt, f'{attempt.gateway} charge failed: {exc}',
                              {'error': type(exc).__name__, **adapter.sanitize(payment_data)})
            logger.exception('[Payment] %s charge crashed for order %s', attempt.gateway, order.id)
            raise ExternalServiceError(
                f'{attempt.gateway} did not complete the payment',
                code='GATEWAY_UNAVAILABLE',
                detail={'payment_id': str(attempt.id), 'gateway': attempt.gateway},
            ) from exc

        if result.pending:
            attempt.transaction_id = result.transaction_id
            attempt.gateway_response = result.raw
            attempt.save(update_fields=['transaction_id', 'gateway_response', 'updated_at'])
            attempt.already_paid = False
            logger.info('[Payment] order %s awaiting %s confirmation (transaction %s)',
                        order.id, attempt.gateway, attempt.transaction_id)
            return attempt

        if not result.success:
            self._mark_failed(attempt, result.message, result.raw)
            logger.info('[Payment] %s declined order %s: %s', attempt.gateway, order.id, result.message)
            if result.declined:
                raise GatewayDeclinedError(
                    result.message or 'Payment was declined',
                    attempt=attempt,
                    detail={'payment_id': str(attempt.id), 'gateway': attempt.gateway},
                )
            raise ExternalServiceError(
                result.message or f'{attempt.gateway} did not complete the payment',
                code='GATEWAY_UNAVAILABLE',
                detail={'payment_id': str(attempt.id), 'gateway': attempt.gateway},
            )

        self._mark_succeeded(attempt, result.transaction_id, result.raw)
        attempt.already_paid = False
        logger.info('[Payment] order %s paid via %s (transaction %s)',
                    order.id, attempt.gateway, attempt.transaction_id)
        return attempt

    def _mark_succeeded(self, attempt, transaction_id, raw):
        attempt.status = PAYMENT_SUCCEEDED
        attempt.transaction_id = transaction_id
        attempt.gateway_response = raw
        attempt.save(update_fields=['status', 'transaction_id', 'gateway_response', 'updated_at'])

    def _mark_failed(self, attempt, message, raw):
        attempt.status = PAYMENT_FAILED
        attempt.error_message = message
        attempt.gateway_response = raw
        attempt.save(update_fields=['status', 'error_message', 'gateway_response', 'updated_at'])

    # ── Asynchronous confirmation ─────────────────────────────────────────

    def handle_webhook(self, gateway, body: bytes, headers):
        """
        渠道回调入口：验签 → 解析 → reconcile。
        headers 是 request.META，签名 header 由各渠道 adapter 指定。

        Returns:
            更新后的 PaymentAttempt；我们不关心的事件类型返回 None。

        Raises:
            ValidationError (UNSUPPORTED_GATEWAY / INVALID_PAYLOAD) / AuthError (INVALID_SIGNATURE)
            NotFoundError (PAYMENT_NOT_FOUND)
        """
        adapter = self.gateway_factory(gateway)
        adapter.verify_signature(body, headers.get(adapter.signature_header))

        try:
            payload = json.loads(body or b'{}')
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            raise ValidationError('Webhook payload must be a JSON object', code='INVALID_PAYLOAD')

        event = adapter.parse_webhook(payload)
        if event is None:
            logger.info('[Payment][webhook] %s event ignored', gateway)
            return None
        return self.reconcile(gateway, event.transaction_id, event.outcome, raw=payload)

    def reconcile(self, gateway, transaction_id, outcome, raw=None) -> PaymentAttempt:
        """
        把渠道确认的结果写到对应的 attempt 上。只有 pending 的 attempt 会被改；
        重复的回调原样返回，和已有终态矛盾的回调只记日志。
        """
        attempt = PaymentAttempt.objects.filter(gateway=gateway, transaction_id=transaction_id).first()
        if attempt is None:
            raise NotFoundError(
                message=f'No {gateway} payment with transaction {transaction_id}',
                code='PAYMENT_NOT_FOUND',
                detail={'gateway': gateway, 'transaction_id': transaction_id},
            )

        if attempt.status != PAYMENT_PENDING or not self._settle_pending(attempt, outcome, raw):
            if attempt.status != outcome:
                logger.error(
                    '[Payment][webhook] %s reports %s for payment %s which is already %s; needs manual follow-up',
                    gateway, outcome, attempt.id, attempt.status,
                )
            return attempt

        logger.info('[Payment][webhook] payment %s for order %s is now %s', attempt.id, attempt.order_id, outcome)
        return attempt

    def expire_stale_attempts(self, older_than) -> int:
        """pending 超过时限的 attempt 标记为 failed，订单可以重新付款。返回处理的数量。"""
        stale = PaymentAttempt.objects.filter(status=PAYMENT_PENDING, created_at__lt=older_than)
        count = 0
        for attempt in stale:
            if not self._settle_pending(attempt, PAYMENT_FAILED, None, message=STALE_PAYMENT_MESSAGE):
                continue
            logger.warning('[Payment] payment %s for order %s expired while pending', attempt.id, attempt.order_id)
            count += 1
        return count

    def _settle_pending(self, attempt, outcome, raw, message=None) -> bool:
        """
        pending → succeeded / failed，只在 attempt 仍是 pending 时写入（回调和过期清理可能同时到）。
        返回 False 表示别人先写了；attempt 会刷新成库里的状态。
        """
        changes = {
            'status': outcome,
            'gateway_response': raw or attempt.gateway_response,
            'updated_at': timezone.now(),
        }
        if outcome == PAYMENT_FAILED:
            changes['error_message'] = message or 'Payment was not completed by the provider'

        updated = PaymentAttempt.objects.filter(id=attempt.id, status=PAYMENT_PENDING).update(**changes)
        if not updated:
            attempt.refresh_from_db()
            return False
        for field_name, value in changes.items():
            setattr(attempt, field_name, value)
        return True

    # ── Read ──────────────────────────────────────────────────────────────

    def payments_for_order(self, order_id):
        order = self.repository.get(order_id)
        return list(self.repository.payments(order))

    def receipt_for_order(self, order_id):
        order = self.repository.get(order_id)
        attempt = self.repository.succeeded_payment(order)
        if attempt is None:
            raise NotFoundError(
                message='No receipt: this order has no succeeded payment',
                code='RECEIPT_NOT_FOUND',
                detail={'order_id': str(order.id)},
            )
        return build_receipt(order, attempt)
