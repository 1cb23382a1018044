"""
支付字段本地校验（在调用任何渠道之前）。

每个 validate_* 返回错误列表 [{field, message}]，空列表表示通过；
由 PaymentOrchestrator.validate() 汇总后统一 raise ValidationError。
"""

import re
from datetime import date
from decimal import Decimal, InvalidOperation

from django.conf import settings

CURRENCY_RE = re.compile(r'^[A-Za-z]{3}$')
EXPIRY_RE = re.compile(r'^\s*(\d{1,2})\s*/\s*(\d{2}|\d{4})\s*$')

AMEX_PREFIXES = ('34', '37')


# ── Card ──────────────────────────────────────────────────────────────────

def normalize_card_number(card_number) -> str:
    return re.sub(r'\s+', '', str(card_number or ''))


def luhn_valid(number: str) -> bool:
    """标准 Luhn 校验。number 必须已经是纯数字。"""
    if not number or not number.isdigit():
        return False
    total = 0
    for index, char in enumerate(reversed(number)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def parse_expiry(payment_data: dict):
    """
    支持三种写法：
      expiryDate = "MM/YY" 或 "MM/YYYY"
      expiryMonth + expiryYear（年份两位或四位）
    返回 (year, month)，无法解析返回 None。
    """
    raw = payment_data.get('expiryDate')
    if raw:
        match = EXPIRY_RE.match(str(raw))
        if not match:
            return None
        month, year = match.group(1), match.group(2)
    else:
        month, year = payment_data.get('expiryMonth'), payment_data.get('expiryYear')
        if month in (None, '') or year in (None, ''):
            return None
        month, year = str(month).strip(), str(year).strip()
        if not (month.isdigit() and year.isdigit() and len(year) in (2, 4)):
            return None

    month, year = int(month), int(year)
    if year < 100:
        year += 2000
    if not 1 <= month <= 12:
        return None
    return year, month


def validate_card(payment_data: dict, today: date = None) -> list:
    today = today or date.today()
    errors = []

    number = normalize_card_number(payment_data.get('cardNumber'))
    if not number:
        errors.append({'field': 'cardNumber', 'message': 'Card number is required'})
    elif not number.isdigit():
        errors.append({'field': 'cardNumber', 'message': 'Card number must contain only digits'})
    elif not 13 <= len(number) <= 19:
        errors.append({'field': 'cardNumber', 'message': 'Card number must be 13 to 19 digits'})
    elif not luhn_valid(number):
        errors.append({'field': 'cardNumber', 'message': 'Invalid card number'})

    if not str(payment_data.get('cardholderName') or '').strip():
        errors.append({'field': 'cardholderName', 'message': 'Cardholder name is required'})

    expiry = parse_expiry(payment_data)
    if expiry is None:
        errors.append({'field': 'expiryDate', 'message': 'Expiry date must be MM/YY or MM/YYYY'})
    elif expiry < (today.year, today.month):
        # 按月比较：当月有效
        errors.append({'field': 'expiryDate', 'message': 'Card has expired'})

    cvv = str(payment_data.get('cvv') or '').strip()
    expected_length = 4 if number.startswith(AMEX_PREFIXES) else 3
    if not cvv.isdigit() or len(cvv) != expected_length:
        errors.append({'field': 'cvv', 'message': f'CVV must be {expected_length} digits'})

    return errors


def card_last4(payment_data: dict) -> str:
    return normalize_card_number(payment_data.get('cardNumber'))[-4:]


# ── MTN Mobile Money ──────────────────────────────────────────────────────

def normalize_msisdn(phone_number) -> str:
    """
    去掉首尾空白、开头的 '+' 或 '00'，再去掉国家码。
    中间出现任何非数字字符都原样保留，交给 validate_msisdn 拒绝。

    >>> normalize_msisdn(' +22996123456 ')
    '96123456'
    """
    phone = str(phone_number or '').strip()
    if phone.startswith('+'):
        phone = phone[1:]
    elif phone.startswith('00'):
        phone = phone[2:]

    country_code = settings.MTN_COUNTRY_CODE
    subscriber_digits = settings.MTN_SUBSCRIBER_DIGITS
    if phone.startswith(country_code) and len(phone) == len(country_code) + subscriber_digits:
        phone = phone[len(country_code):]
    return phone


def validate_msisdn(phone_number) -> list:
    if not str(phone_number or '').strip():
        return [{'field': 'phoneNumber', 'message': 'Phone number is required for MTN Mobile Money'}]

    phone = normalize_msisdn(phone_number)
    subscriber_digits = settings.MTN_SUBSCRIBER_DIGITS
    if not phone.isdigit() or len(phone) != subscriber_digits:
        return [{
            'field': 'phoneNumber',
            'message': f'Phone number must be {subscriber_digits} digits, optionally prefixed with +{settings.MTN_COUNTRY_CODE}',
        }]
    if phone[:2] not in settings.MTN_ALLOWED_PREFIXES:
        return [{'field': 'phoneNumber', 'message': 'Phone number is not an MTN Mobile Money number'}]
    return []


# ── Common ────────────────────────────────────────────────────────────────

def to_decimal(value):
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None


def validate_amount_and_currency(amount, currency, expected_amount=None) -> list:
    errors = []
    value = to_decimal(amount)
    if value is None or not value.is_finite():
        errors.append({'field': 'amount', 'message': 'Amount must be a number'})
    elif value <= 0:
        errors.append({'field': 'amount', 'message': 'Amount must be greater than zero'})
    elif expected_amount is not None and value != Decimal(expected_amount):
        errors.append({
            'field': 'amount',
            'message': f'Amount must equal the order cost ({Decimal(expected_amount):.2f})',
            'code': 'AMOUNT_MISMATCH',
        })

    if not CURRENCY_RE.match(str(currency or '')):
        errors.append({'field': 'currency', 'message': 'Currency must be a 3-letter ISO code'})
    return errors
