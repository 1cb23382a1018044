"""
BaseGatewayAdapter — 所有支付渠道 Adapter 的抽象基类。

每个新渠道只需：
1. 继承 BaseGatewayAdapter
2. 实现 collect_errors()、charge() 和 parse_webhook()
3. 在 factory.py 的 _build_registry 注册一行

PaymentOrchestrator 完全不知道背后是哪家渠道。
"""

import hashlib
import hmac
from abc import ABC, abstractmethod
from typing import Optional

from django.conf import settings

from ..exceptions import AuthError, ExternalServiceError
from .types import ChargeRequest, GatewayResult, WebhookEvent


class BaseGatewayAdapter(ABC):
    """
    两步：collect_errors → charge，外加一个异步回调入口 parse_webhook

    collect_errors() 只做本地字段校验，不发网络请求；
    charge() 调用渠道，返回 GatewayResult，渠道不可达时 raise ExternalServiceError。
    """

    # 与 factory 注册键一致
    gateway: str = ""

    # 渠道回调里携带签名的 header（Django META 的写法）
    signature_header: str = "HTTP_X_WEBHOOK_SIGNATURE"

    # ── 必须实现 ───────────────────────────────────────────────────────────

    @abstractmethod
    def collect_errors(self, payment_data: dict) -> list:
        """返回 [{field, message}]，空列表表示通过。"""

    @abstractmethod
    def charge(self, request: ChargeRequest) -> GatewayResult:
        """
        发起扣款。

        Raises:
            ExternalServiceError: 渠道不可达 / 超时
        """

    @abstractmethod
    def parse_webhook(self, payload: dict) -> Optional[WebhookEvent]:
        """
        从渠道回调里取出交易号和最终结果。
        我们不关心的事件类型返回 None。
        """

    # ── 提供默认实现 ───────────────────────────────────────────────────────

    def sanitize(self, payment_data: dict) -> dict:
        """写进日志 / gateway_response 的版本，子类按需覆盖。"""
        return {}

    def verify_signature(self, body: bytes, signature: Optional[str]) -> None:
        """
        校验回调签名：HMAC-SHA256(PAYMENT_WEBHOOK_SECRET, 原始 body) 的十六进制。

        Raises:
            ExternalServiceError: 没有配置 secret
            AuthError:            签名缺失或不匹配
        """
        secret = settings.PAYMENT_WEBHOOK_SECRET
        if not secret:
            raise ExternalServiceError(
                "Payment webhook secret is not configured",
                code="WEBHOOK_NOT_CONFIGURED",
            )
        if not signature:
            raise AuthError("Missing webhook signature", code="INVALID_SIGNATURE")

        expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature.strip()):
            raise AuthError(f"Invalid {self.gateway} webhook signature", code="INVALID_SIGNATURE")
