"""
患者消息通道（WhatsApp / SMS）。

核心只依赖 BaseMessagingService.send()；具体发到哪由 settings.MESSAGING_PROVIDER 决定：
  log   — LogMessagingService   只写日志（开发 / 测试）
  http  — HttpMessagingService  POST 到 MESSAGING_WEBHOOK_URL（由外部网关转发）
"""

import logging
from abc import ABC, abstractmethod

import requests
from django.conf import settings

from .exceptions import ExternalServiceError

logger = logging.getLogger(__name__)

CHANNELS = ('whatsapp', 'sms')


class BaseMessagingService(ABC):

    provider = ""

    @abstractmethod
    def send(self, recipient: str, message: str, channel: str = 'sms') -> str:
        """
        发送一条消息，返回渠道给的 message id。

        Raises:
            ExternalServiceError: 渠道不可用
        """


class LogMessagingService(BaseMessagingService):

    provider = "log"

    def send(self, recipient, message, channel='sms'):
        logger.info("[Messaging] (%s) to %s: %s", channel, recipient, message)
        return f"log-{channel}-{recipient}"


class HttpMessagingService(BaseMessagingService):

    provider = "http"

    def __init__(self, webhook_url=None, timeout=None):
        self.webhook_url = webhook_url or settings.MESSAGING_WEBHOOK_URL
        self.timeout = timeout or settings.MESSAGING_TIMEOUT_SECONDS

    def send(self, recipient, message, channel='sms'):
        if not self.webhook_url:
            raise ExternalServiceError("MESSAGING_WEBHOOK_URL is not set", code="MESSAGING_NOT_CONFIGURED")

        try:
            response = requests.post(
                self.webhook_url,
                json={"to": recipient, "channel": channel, "body": message},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("[Messaging] %s delivery to %s failed: %s", channel, recipient, exc)
            raise ExternalServiceError(f"Failed to send {channel} message: {exc}", code="MESSAGING_FAILED")

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        return str(payload.get("id") or payload.get("sid") or "")


def _build_registry() -> dict[str, type[BaseMessagingService]]:
    return {
        "log":  LogMessagingService,
        "http": HttpMessagingService,
    }


def get_messaging_service() -> BaseMessagingService:
    """
    Raises:
        ValueError: MESSAGING_PROVIDER 未知
    """
    provider = getattr(settings, "MESSAGING_PROVIDER", "log")
    registry = _build_registry()
    service_cls = registry.get(provider)

    if service_cls is None:
        raise ValueError(
            f"Unknown MESSAGING_PROVIDER: {provider!r}. "
            f"Known providers: {list(registry.keys())}"
        )

    return service_cls()
