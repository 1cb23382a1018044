"""
付款收据：由订单和它唯一的 succeeded PaymentAttempt 推导出来，不单独存表。

价格是含税价（TTC），税额从总价里反推：
  subtotal = total / (1 + RECEIPT_TAX_RATE)
  tax      = total - subtotal
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from django.conf import settings

CENT = Decimal('0.01')


@dataclass
class ReceiptLine:
    name: str
    quantity: Optional[int]
    dosage: Optional[str]
    total: Decimal

    def to_dict(self) -> dict:
        return {'name': self.name, 'quantity': self.quantity, 'dosage': self.dosage, 'total': str(self.total)}


@dataclass
class Receipt:
    receipt_number: str
    issued_at: str
    order_id: str
    payment_id: str
    gateway: str
    transaction_id: Optional[str]
    currency: str
    total: Decimal
    subtotal: Decimal
    tax_amount: Decimal
    tax_rate: Decimal
    pharmacy_name: str
    lines: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'receiptNumber': self.receipt_number,
            'issuedAt': self.issued_at,
            'orderId': self.order_id,
            'paymentId': self.payment_id,
            'gateway': self.gateway,
            'transactionId': self.transaction_id,
            'currency': self.currency,
            'total': str(self.total),
            'subtotal': str(self.subtotal),
            'taxAmount': str(self.tax_amount),
            'taxRate': str(self.tax_rate),
            'pharmacyName': self.pharmacy_name,
            'lines': [line.to_dict() for line in self.lines],
        }


def receipt_number(attempt) -> str:
    """RX-<年份>-<payment id 前 8 位>，同一笔付款每次生成都一样。"""
    return f'RX-{attempt.updated_at:%Y}-{attempt.id.hex[:8].upper()}'


def build_receipt(order, attempt, tax_rate=None) -> Receipt:
    tax_rate = Decimal(str(settings.RECEIPT_TAX_RATE if tax_rate is None else tax_rate))
    total = Decimal(attempt.amount).quantize(CENT)
    subtotal = (total / (1 + tax_rate)).quantize(CENT, rounding=ROUND_HALF_UP)

    details = order.medication_details or {}
    line = ReceiptLine(
        name=details.get('name') or 'Prescription medication',
        quantity=details.get('quantity'),
        dosage=details.get('dosage'),
        total=total,
    )
    return Receipt(
        receipt_number=receipt_number(attempt),
        issued_at=attempt.updated_at.isoformat(),
        order_id=str(order.id),
        payment_id=str(attempt.id),
        gateway=attempt.gateway,
        transaction_id=attempt.transaction_id,
        currency=attempt.currency,
        total=total,
        subtotal=subtotal,
        tax_amount=total - subtotal,
        tax_rate=tax_rate,
        pharmacy_name=settings.PHARMACY_NAME,
        lines=[line],
    )
