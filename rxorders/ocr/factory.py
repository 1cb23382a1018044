"""
工厂函数：根据 settings.OCR_PROVIDER 返回对应的 OCRService 实例。

新增 OCR 供应商只需：
  1. 在 services.py 新建 XxxOCRService(BaseOCRService) 类
  2. 在此处 _build_registry 加一行
  不需要修改 pipeline.py / tasks.py 或任何业务代码。
"""

from django.conf import settings

from .base import BaseOCRService


def _build_registry() -> dict[str, type[BaseOCRService]]:
    # 延迟导入，避免在 Django 启动前触发 SDK import
    from .services import ClaudeVisionOCRService, OpenAIVisionOCRService

    return {
        "anthropic": ClaudeVisionOCRService,
        "openai":    OpenAIVisionOCRService,
    }


def get_ocr_service() -> BaseOCRService:
    """
    从 settings.OCR_PROVIDER 读取供应商，返回对应的 OCRService 实例。

    Raises:
        ValueError: OCR_PROVIDER 未知
    """
    provider = getattr(settings, "OCR_PROVIDER", "anthropic")
    registry = _build_registry()
    service_cls = registry.get(provider)

    if service_cls is None:
        raise ValueError(
            f"Unknown OCR_PROVIDER: {provider!r}. "
            f"Known providers: {list(registry.keys())}"
        )

    return service_cls()
