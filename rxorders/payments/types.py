"""
支付层的标准结构。

PaymentOrchestrator 把 HTTP 请求整理成 ChargeRequest 交给 gateway adapter，
adapter 返回 GatewayResult。业务层只认识这两个结构，不知道背后是哪家渠道。
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional


@dataclass
class ChargeRequest:
    order_id: str
    amount: Decimal
    currency: str                                   # ISO 4217，三个字母
    payment_data: dict = field(default_factory=dict, repr=False)   # 卡号等敏感字段，不进 repr


@dataclass
class GatewayResult:
    """
    success=False 且 declined=True   → 渠道明确拒绝（余额不足、卡被拒）
    success=False 且 declined=False  → 渠道不可达 / 超时
    pending=True                     → 渠道已受理，结果稍后通过 webhook 回调（attempt 保持 pending）
    """

    success: bool
    transaction_id: Optional[str] = None
    message: str = ""
    declined: bool = False
    pending: bool = False
    raw: dict[str, Any] = field(default_factory=dict)   # 已脱敏的渠道响应，存到 PaymentAttempt.gateway_response


@dataclass
class WebhookEvent:
    """渠道回调里我们关心的部分：哪笔交易、最终结果。"""

    transaction_id: str
    outcome: str                                    # succeeded / failed
    event_type: str = ""
