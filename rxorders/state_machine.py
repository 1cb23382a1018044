"""
OrderStateMachine — 订单状态迁移的唯一入口。

迁移表（from, to）→ 允许的 actor + guard。不在表里的组合一律
InvalidTransitionError；delivered / rejected 是终态，之后任何迁移
TerminalStateError。

每一次迁移尝试（成功或被拒绝）都会往 OrderAuditEntry 追加一条，
被拒绝的那条在订单不变的情况下照样落库。
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from django.db import transaction

from .exceptions import (
    AuthError,
    BaseAppException,
    ConflictError,
    GuardFailedError,
    InvalidTransitionError,
    TerminalStateError,
    ValidationError,
)
from .models import (
    AWAITING_PAYMENT,
    AWAITING_VERIFICATION,
    DELIVERED,
    OCR_COMPLETED,
    ORDER_STATUSES,
    OUT_FOR_DELIVERY,
    PENDING_VERIFICATION,
    PREPARING,
    PrescriptionOrder,
    REJECTED,
    ROLE_PATIENT,
    ROLE_PHARMACIST,
    ROLE_SYSTEM,
)
from .signals import order_status_changed

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({DELIVERED, REJECTED})

APPLIED = 'applied'
REJECTED_ATTEMPT = 'rejected'


@dataclass(frozen=True)
class Edge:
    actors: frozenset
    guard: Optional[str] = None      # OrderStateMachine 上的方法名


TRANSITIONS = {
    (PENDING_VERIFICATION, AWAITING_VERIFICATION): Edge(frozenset({ROLE_SYSTEM, ROLE_PATIENT}), '_guard_ocr_completed'),
    (AWAITING_VERIFICATION, AWAITING_PAYMENT): Edge(frozenset({ROLE_PHARMACIST}), '_guard_review_approved'),
    (AWAITING_VERIFICATION, REJECTED): Edge(frozenset({ROLE_PHARMACIST}), '_guard_rejection_reason'),
    (AWAITING_PAYMENT, PREPARING): Edge(frozenset({ROLE_PHARMACIST, ROLE_SYSTEM}), '_guard_payment_succeeded'),
    (PREPARING, OUT_FOR_DELIVERY): Edge(frozenset({ROLE_PHARMACIST})),
    (OUT_FOR_DELIVERY, DELIVERED): Edge(frozenset({ROLE_SYSTEM, ROLE_PHARMACIST})),
    # 付款前任意非终态都可以被药剂师拒绝
    (PENDING_VERIFICATION, REJECTED): Edge(frozenset({ROLE_PHARMACIST})),
    (AWAITING_PAYMENT, REJECTED): Edge(frozenset({ROLE_PHARMACIST}), '_guard_not_paid'),
}


def is_terminal(status) -> bool:
    return status in TERMINAL_STATUSES


def allowed_targets(status, actor=None) -> list:
    return [
        to for (frm, to), edge in TRANSITIONS.items()
        if frm == status and (actor is None or actor in edge.actors)
    ]


def replay_status(entries, initial=PENDING_VERIFICATION) -> str:
    """
    把审计日志折叠成当前状态。只看 applied 的条目；
    日志断链（from 对不上当前状态）说明投影和日志不一致，直接报错。
    """
    status = initial
    for entry in entries:
        if entry.outcome != APPLIED:
            continue
        if entry.from_status != status:
            raise ValueError(
                f'Audit log is inconsistent: entry {entry.pk} moves from '
                f'{entry.from_status!r} but replayed status is {status!r}'
            )
        status = entry.to_status
    return status


class OrderStateMachine:

    def __init__(self, repository):
        self.repository = repository

    # ── public API ────────────────────────────────────────────────────────

    def transition(
        self,
        order,
        target: str,
        actor: str,
        *,
        reason: Optional[str] = None,
        context: Optional[dict] = None,
        apply: Optional[Callable[[PrescriptionOrder], Optional[dict]]] = None,
    ) -> PrescriptionOrder:
        """
        校验并执行一次迁移，返回更新后的 order。

        Args:
            order:   PrescriptionOrder 或 orderId（传 order 时用它读到的 version 做乐观锁）
            target:  目标状态
            actor:   patient / pharmacist / system / doctor
            reason:  拒绝原因等备注，写进审计日志
            context: guard 需要的额外信息（例如 {'approved': True, 'cost': Decimal}）
            apply:   在同一个事务里执行的附加写入，返回要一起更新的字段 dict

        Raises:
            TerminalStateError / ValidationError / InvalidTransitionError /
            AuthError / GuardFailedError / ConflictError
        """
        if not isinstance(order, PrescriptionOrder):
            order = self.repository.get(order)

        current = order.status
        context = dict(context or {})
        if reason is not None:
            context['reason'] = reason

        try:
            self.check(order, target, actor, context)
        except BaseAppException as exc:
            self._record_rejected(order, current, target, actor, exc)
            raise

        try:
            with transaction.atomic():
                changes = {'status': target}
                if apply is not None:
                    changes.update(apply(order) or {})
                self.repository.update(order, **changes)
                self.repository.append_audit(
                    order, current, target, actor, APPLIED, message=(reason or '').strip(),
                )
        except ConflictError as exc:
            self._record_rejected(order, current, target, actor, exc)
            raise

        logger.info('[StateMachine] order %s: %s -> %s (actor=%s)', order.id, current, target, actor)

        transaction.on_commit(lambda: order_status_changed.send(
            sender=self.__class__,
            order_id=str(order.id),
            from_status=current,
            to_status=target,
            actor=actor,
        ))
        return order

    def check(self, order, target, actor, context=None) -> None:
        """只校验不写入。按 终态 → 未知状态 → 迁移表 → actor → guard 的顺序。"""
        context = context or {}
        current = order.status

        if is_terminal(current):
            raise TerminalStateError(
                message=f"Order is {current}; no further transitions are allowed",
                detail={'order_id': str(order.id), 'current_status': current, 'requested_status': target},
            )

        if target not in ORDER_STATUSES:
            raise ValidationError(
                message=f'Unknown order status: {target!r}',
                code='UNKNOWN_STATUS',
                detail={'allowed': ORDER_STATUSES},
            )

        edge = TRANSITIONS.get((current, target))
        if edge is None:
            raise InvalidTransitionError(
                message=f"Cannot move order from '{current}' to '{target}'",
                detail={
                    'order_id': str(order.id),
                    'current_status': current,
                    'requested_status': target,
                    'allowed': allowed_targets(current),
                },
            )

        if actor not in edge.actors:
            raise AuthError(
                message=f"Actor '{actor}' may not move an order from '{current}' to '{target}'",
                detail={'allowed_actors': sorted(edge.actors)},
            )

        if edge.guard:
            failure = getattr(self, edge.guard)(order, context)
            if failure:
                raise GuardFailedError(
                    message=failure,
                    detail={'order_id': str(order.id), 'current_status': current, 'requested_status': target},
                )

    def can_transition(self, order, target, actor, context=None) -> bool:
        try:
            self.check(order, target, actor, context)
        except BaseAppException:
            return False
        return True

    def audit_trail(self, order):
        return self.repository.audit_trail(order)

    # ── guards：返回失败原因，None 表示通过 ─────────────────────────────────

    def _guard_ocr_completed(self, order, context):
        # OCR 结果和迁移在同一次写入里落库时，由 context 带上即将写入的 ocr_status
        if context.get('ocr_status', order.ocr_status) != OCR_COMPLETED:
            return 'Prescription text is not available yet; wait for OCR or enter the text manually'
        return None

    def _guard_review_approved(self, order, context):
        if 'approved' in context:
            approved = context['approved']
        else:
            review = order.latest_review
            approved = bool(review and review.approved)
        cost = context.get('cost', order.cost)
        if not approved:
            return 'A pharmacist approval is required before payment'
        if cost is None or Decimal(cost) <= 0:
            return 'Order cost must be greater than zero before payment'
        return None

    def _guard_rejection_reason(self, order, context):
        if not (context.get('reason') or '').strip():
            return 'A rejection reason is required'
        return None

    def _guard_payment_succeeded(self, order, context):
        if not self.repository.has_succeeded_payment(order):
            return 'No succeeded payment exists for this order'
        return None

    def _guard_not_paid(self, order, context):
        if self.repository.has_succeeded_payment(order):
            return 'Order has already been paid and can no longer be rejected'
        if self.repository.has_pending_payment(order):
            # 扣款还没有结果：不是 guard 不满足，而是和进行中的扣款冲突
            raise ConflictError(
                message='A payment for this order is in progress; retry once it completes',
                code='PAYMENT_IN_PROGRESS',
                detail={'order_id': str(order.id)},
            )
        return None

    # ── audit ─────────────────────────────────────────────────────────────

    def _record_rejected(self, order, current, target, actor, exc):
        logger.warning(
            '[StateMachine] rejected %s -> %s on order %s (actor=%s): %s',
            current, target, order.id, actor, exc.code,
        )
        self.repository.append_audit(
            order,
            current,
            str(target)[:30],
            actor,
            REJECTED_ATTEMPT,
            error_code=exc.code,
            message=exc.message,
        )
