"""
工厂函数：根据 gateway 字符串返回对应的支付渠道 Adapter。

新增渠道只需：
  1. 在 gateways.py 新建 Adapter 类
  2. 在此处 _build_registry 加一行
  不需要修改 orchestrator.py 或任何业务代码。
"""

from ..exceptions import ValidationError
from .base import BaseGatewayAdapter


def _build_registry() -> dict[str, type[BaseGatewayAdapter]]:
    # 延迟导入，避免循环依赖
    from .gateways import MTNGateway, PayPalGateway, StripeGateway

    return {
        "stripe": StripeGateway,
        "paypal": PayPalGateway,
        "mtn":    MTNGateway,
    }


def get_gateway(gateway: str) -> BaseGatewayAdapter:
    """
    Raises:
        ValidationError: 未知渠道（UNSUPPORTED_GATEWAY）
    """
    registry = _build_registry()
    adapter_cls = registry.get(gateway)

    if adapter_cls is None:
        raise ValidationError(
            message=f"Unsupported payment gateway: {gateway!r}.",
            code="UNSUPPORTED_GATEWAY",
            detail={"supported_gateways": list(registry.keys())},
        )

    return adapter_cls()
