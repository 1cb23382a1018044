"""
ReviewWorkflow — 药剂师审核：approve / reject / edit。

approve 和 reject 都会留下一条不可修改的 PharmacistReview，
并且和对应的状态迁移在同一个事务里写入。
edit 只改 medication_details，不改状态，只能在做出决定之前。
"""

import logging
from decimal import Decimal

from .exceptions import InvalidTransitionError, TerminalStateError, ValidationError
from .models import (
    AWAITING_PAYMENT,
    AWAITING_VERIFICATION,
    PENDING_VERIFICATION,
    PharmacistReview,
    REJECTED,
    ROLE_PHARMACIST,
)
from .payments.validators import to_decimal
from .state_machine import is_terminal
from .types import MedicationDetails

logger = logging.getLogger(__name__)

EDITABLE_STATUSES = (PENDING_VERIFICATION, AWAITING_VERIFICATION)


def validate_medication_details(details) -> MedicationDetails:
    """name / dosage 非空，quantity 正整数。返回规范化后的 MedicationDetails。"""
    if not isinstance(details, dict):
        raise ValidationError('Medication details must be an object', code='INVALID_MEDICATION_DETAILS')

    errors = []
    name = str(details.get('name') or '').strip()
    dosage = str(details.get('dosage') or '').strip()
    quantity = details.get('quantity')

    if not name:
        errors.append({'field': 'name', 'message': 'Medication name is required'})
    if not dosage:
        errors.append({'field': 'dosage', 'message': 'Dosage is required'})
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        errors.append({'field': 'quantity', 'message': 'Quantity must be a positive integer'})

    if errors:
        raise ValidationError(
            message='Invalid medication details',
            code='INVALID_MEDICATION_DETAILS',
            detail={'errors': errors},
        )
    return MedicationDetails(name=name, dosage=dosage, quantity=quantity)


class ReviewWorkflow:

    def __init__(self, repository, state_machine):
        self.repository = repository
        self.state_machine = state_machine

    def approve(self, order_id, calculated_cost, reviewed_by, edited_details=None, notes=None):
        cost = to_decimal(calculated_cost)
        if cost is None or not cost.is_finite() or cost <= 0:
            raise ValidationError(
                'Calculated cost must be greater than zero',
                code='INVALID_COST',
                detail={'calculated_cost': str(calculated_cost)},
            )
        cost = cost.quantize(Decimal('0.01'))
        details = validate_medication_details(edited_details) if edited_details is not None else None

        order = self._load_undecided(order_id)

        def record(order):
            PharmacistReview.objects.create(
                order=order,
                reviewed_by=reviewed_by,
                approved=True,
                edited_details=details.to_dict() if details else None,
                pharmacist_notes=notes,
                calculated_cost=cost,
            )
            changes = {'cost': cost}
            if details:
                changes['medication_details'] = details.to_dict()
            return changes

        order = self.state_machine.transition(
            order, AWAITING_PAYMENT, ROLE_PHARMACIST,
            context={'approved': True, 'cost': cost},
            apply=record,
        )
        logger.info('[Review] order %s approved by %s (cost=%s)', order.id, reviewed_by, cost)
        return order

    def reject(self, order_id, rejection_reason, reviewed_by, notes=None):
        reason = (rejection_reason or '').strip()
        if not reason:
            raise ValidationError('Rejection reason is required', code='REJECTION_REASON_REQUIRED')

        order = self._load_undecided(order_id)

        def record(order):
            PharmacistReview.objects.create(
                order=order,
                reviewed_by=reviewed_by,
                approved=False,
                rejection_reason=reason,
                pharmacist_notes=notes,
            )
            return {}

        order = self.state_machine.transition(order, REJECTED, ROLE_PHARMACIST, reason=reason, apply=record)
        logger.info('[Review] order %s rejected by %s', order.id, reviewed_by)
        return order

    def edit(self, order_id, edited_details, notes=None):
        details = validate_medication_details(edited_details)
        order = self.repository.get(order_id)

        if is_terminal(order.status):
            raise TerminalStateError(
                message=f'Order is {order.status}; it can no longer be edited',
                detail={'order_id': str(order.id)},
            )
        if order.status not in EDITABLE_STATUSES:
            raise InvalidTransitionError(
                message=f"Order is '{order.status}'; medication details can only be edited before review",
                code='EDIT_NOT_ALLOWED',
                detail={'order_id': str(order.id), 'current_status': order.status},
            )

        self.repository.update(order, medication_details=details.to_dict())
        logger.info('[Review] order %s medication details edited (notes=%r)', order.id, notes)
        return order

    def pending_queue(self):
        return self.repository.list_by_status(AWAITING_VERIFICATION, oldest_first=True)

    def _load_undecided(self, order_id):
        # 终态 / 状态不对由状态机拒绝，并写进审计日志
        return self.repository.get(order_id)
