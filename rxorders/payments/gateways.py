"""
具体支付渠道实现（sandbox）。

新增渠道：在此文件添加一个类，然后在 factory.py 注册即可。

已注册渠道：
  stripe  — StripeGateway   (银行卡，Luhn / 有效期 / CVV 本地校验)
  paypal  — PayPalGateway   (跳转授权，本地不校验字段)
  mtn     — MTNGateway      (MTN Mobile Money，贝宁号码)

sandbox 约定：
  stripe  卡号 4000000000000002 → "Your card was declined."
  mtn     号码里包含 "0000"      → "Insufficient balance in mobile money account"
  mtn     号码里包含 "1111"      → 已受理，等待用户在手机上确认（pending，结果走 webhook）
  paypal  总是成功

webhook 约定（parse_webhook）：
  stripe  payment_intent.succeeded / payment_intent.payment_failed，交易号在 data.object.id
  paypal  PAYMENT.CAPTURE.COMPLETED / PAYMENT.CAPTURE.DENIED，交易号在 resource.id
  mtn     status = SUCCESSFUL / FAILED，交易号在 referenceId（兼容 transactionId）
"""

import logging
import uuid
from typing import Optional

from .base import BaseGatewayAdapter
from ..models import PAYMENT_FAILED, PAYMENT_SUCCEEDED
from .types import ChargeRequest, GatewayResult, WebhookEvent
from .validators import card_last4, normalize_card_number, normalize_msisdn, validate_card, validate_msisdn

logger = logging.getLogger(__name__)


def _reference(prefix: str, length: int) -> str:
    return f"{prefix}{uuid.uuid4().hex[:length]}"


# ── StripeGateway ─────────────────────────────────────────────────────────
#
# paymentData 示例：
# {
#   "cardNumber":     "4242 4242 4242 4242",
#   "expiryDate":     "12/27",          ← 也可以是 "12/2027" 或 expiryMonth / expiryYear
#   "cvv":            "123",            ← 34/37 开头（Amex）要求 4 位
#   "cardholderName": "Awa Dossou"
# }
#
# 日志和 gateway_response 里只出现卡号后四位，CVV 不落任何地方。

class StripeGateway(BaseGatewayAdapter):
    gateway = "stripe"
    signature_header = "HTTP_STRIPE_SIGNATURE"

    DECLINED_TEST_CARD = "4000000000000002"

    def collect_errors(self, payment_data: dict) -> list:
        return validate_card(payment_data)

    def sanitize(self, payment_data: dict) -> dict:
        return {"card_last4": card_last4(payment_data)}

    def charge(self, request: ChargeRequest) -> GatewayResult:
        last4 = card_last4(request.payment_data)
        logger.info("[Payment][stripe] charging %s %s on card ****%s for order %s",
                    request.amount, request.currency, last4, request.order_id)

        if normalize_card_number(request.payment_data.get("cardNumber")) == self.DECLINED_TEST_CARD:
            return GatewayResult(
                success=False,
                declined=True,
                message="Your card was declined.",
                raw={"decline_code": "card_declined", "card_last4": last4},
            )

        charge_id = _reference("ch_", 24)
        return GatewayResult(
            success=True,
            transaction_id=charge_id,
            raw={
                "id": charge_id,
                "status": "succeeded",
                "amount": str(request.amount),
                "currency": request.currency.lower(),
                "card_last4": last4,
            },
        )

    STRIPE_OUTCOMES = {
        "payment_intent.succeeded": PAYMENT_SUCCEEDED,
        "payment_intent.payment_failed": PAYMENT_FAILED,
    }

    def parse_webhook(self, payload: dict) -> Optional[WebhookEvent]:
        outcome = self.STRIPE_OUTCOMES.get(payload.get("type"))
        intent = (payload.get("data") or {}).get("object") or {}
        if outcome is None or not intent.get("id"):
            return None
        return WebhookEvent(transaction_id=intent["id"], outcome=outcome, event_type=payload["type"])


# ── PayPalGateway ─────────────────────────────────────────────────────────
#
# 用户在 PayPal 页面完成授权，后端只拿到授权后的回调结果，
# 本地没有字段可校验。

class PayPalGateway(BaseGatewayAdapter):
    gateway = "paypal"
    signature_header = "HTTP_PAYPAL_TRANSMISSION_SIG"

    def collect_errors(self, payment_data: dict) -> list:
        return []

    def charge(self, request: ChargeRequest) -> GatewayResult:
        logger.info("[Payment][paypal] capturing %s %s for order %s",
                    request.amount, request.currency, request.order_id)

        capture_id = _reference("PP", 12).upper()
        return GatewayResult(
            success=True,
            transaction_id=capture_id,
            raw={
                "id": capture_id,
                "status": "COMPLETED",
                "purchase_units": [{
                    "reference_id": request.order_id,
                    "amount": {"currency_code": request.currency, "value": str(request.amount)},
                }],
            },
        )

    PAYPAL_OUTCOMES = {
        "PAYMENT.CAPTURE.COMPLETED": PAYMENT_SUCCEEDED,
        "PAYMENT.CAPTURE.DENIED": PAYMENT_FAILED,
    }

    def parse_webhook(self, payload: dict) -> Optional[WebhookEvent]:
        outcome = self.PAYPAL_OUTCOMES.get(payload.get("event_type"))
        resource = payload.get("resource") or {}
        if outcome is None or not resource.get("id"):
            return None
        return WebhookEvent(transaction_id=resource["id"], outcome=outcome, event_type=payload["event_type"])


# ── MTNGateway ────────────────────────────────────────────────────────────
#
# paymentData 示例：
# { "phoneNumber": "+229 96 12 34 56" }   ← 不行，中间有空格会被拒绝
# { "phoneNumber": "+22996123456" }       ← 可以，也可以是 0022996123456 / 96123456
#
# 号码先规范化成 8 位本地号码，前两位必须在 MTN_ALLOWED_PREFIXES 里。

class MTNGateway(BaseGatewayAdapter):
    gateway = "mtn"
    signature_header = "HTTP_X_MTN_SIGNATURE"

    def collect_errors(self, payment_data: dict) -> list:
        return validate_msisdn(payment_data.get("phoneNumber"))

    def sanitize(self, payment_data: dict) -> dict:
        return {"msisdn": normalize_msisdn(payment_data.get("phoneNumber"))}

    def charge(self, request: ChargeRequest) -> GatewayResult:
        msisdn = normalize_msisdn(request.payment_data.get("phoneNumber"))
        logger.info("[Payment][mtn] requesting %s %s from %s for order %s",
                    request.amount, request.currency, msisdn, request.order_id)

        reference = _reference("MTN", 10).upper()
        if "0000" in msisdn:
            return GatewayResult(
                success=False,
                declined=True,
                message="Insufficient balance in mobile money account",
                raw={"referenceId": reference, "status": "FAILED", "reason": "NOT_ENOUGH_FUNDS"},
            )
        if "1111" in msisdn:
            # request-to-pay 已受理，用户还没在手机上确认
            return GatewayResult(
                success=False,
                pending=True,
                transaction_id=reference,
                message="Awaiting approval on the mobile money account",
                raw={"referenceId": reference, "status": "PENDING", "payer": {"partyIdType": "MSISDN", "partyId": msisdn}},
            )

        return GatewayResult(
            success=True,
            transaction_id=reference,
            raw={
                "referenceId": reference,
                "status": "SUCCESSFUL",
                "amount": str(request.amount),
                "currency": request.currency,
                "payer": {"partyIdType": "MSISDN", "partyId": msisdn},
                "financialTransactionId": _reference("FIN", 12),
            },
        )

    MTN_OUTCOMES = {
        "SUCCESSFUL": PAYMENT_SUCCEEDED,
        "FAILED": PAYMENT_FAILED,
    }

    def parse_webhook(self, payload: dict) -> Optional[WebhookEvent]:
        outcome = self.MTN_OUTCOMES.get(payload.get("status"))
        reference = payload.get("referenceId") or payload.get("transactionId")
        if outcome is None or not reference:
            return None
        return WebhookEvent(transaction_id=reference, outcome=outcome, event_type=payload["status"])
