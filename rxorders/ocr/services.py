"""
具体 OCR 实现。

新增 OCR 供应商：在此文件添加一个类，然后在 factory.py 注册即可。

已注册供应商：
  anthropic — ClaudeVisionOCRService   (claude-sonnet-4-20250514)
  openai    — OpenAIVisionOCRService   (gpt-4o)
"""

import logging
import os

from ..exceptions import ExternalServiceError
from .base import BaseOCRService, OCR_SYSTEM_PROMPT, OCR_USER_PROMPT
from .types import OCRResult

logger = logging.getLogger(__name__)


def _split_data_uri(image_url: str):
    """data:image/png;base64,XXXX → ("image/png", "XXXX")"""
    header, _, data = image_url.partition(',')
    media_type = header[len('data:'):].split(';')[0]
    return media_type, data


# ── ClaudeVisionOCRService ────────────────────────────────────────────────
#
# 使用 Anthropic SDK。
# 环境变量：ANTHROPIC_API_KEY
# 模型：claude-sonnet-4-20250514（可通过 ANTHROPIC_MODEL 覆盖）

class ClaudeVisionOCRService(BaseOCRService):

    provider = "anthropic"
    DEFAULT_MODEL = "claude-sonnet-4-20250514"

    def _content_block(self, image_url: str) -> dict:
        if image_url.startswith('data:'):
            media_type, data = _split_data_uri(image_url)
            block_type = 'document' if media_type == 'application/pdf' else 'image'
            return {
                "type": block_type,
                "source": {"type": "base64", "media_type": media_type, "data": data},
            }
        block_type = 'document' if image_url.lower().split('?')[0].endswith('.pdf') else 'image'
        return {"type": block_type, "source": {"type": "url", "url": image_url}}

    def extract(self, image_url: str) -> OCRResult:
        import anthropic

        api_key = os.getenv("ANTHROPIC_API_KEY")
        if not api_key:
            raise ExternalServiceError("ANTHROPIC_API_KEY is not set", code="OCR_NOT_CONFIGURED")

        model = os.getenv("ANTHROPIC_MODEL", self.DEFAULT_MODEL)
        client = anthropic.Anthropic(api_key=api_key)

        try:
            response = client.messages.create(
                model=model,
                max_tokens=2000,
                system=OCR_SYSTEM_PROMPT,
                messages=[{
                    "role": "user",
                    "content": [
                        self._content_block(image_url),
                        {"type": "text", "text": OCR_USER_PROMPT},
                    ],
                }],
            )
        except anthropic.APIError as exc:
            logger.warning("[OCR] Anthropic request failed: %s", exc)
            raise ExternalServiceError(f"OCR provider error: {exc}")

        return self.parse_response(response.content[0].text)


# ── OpenAIVisionOCRService ────────────────────────────────────────────────
#
# 使用 OpenAI SDK。
# 环境变量：OPENAI_API_KEY
# 模型：gpt-4o（可通过 OPENAI_MODEL 覆盖）
# image_url 同时支持 http(s) 链接和 data URI；PDF 不支持。

class OpenAIVisionOCRService(BaseOCRService):

    provider = "openai"
    DEFAULT_MODEL = "gpt-4o"

    def extract(self, image_url: str) -> OCRResult:
        import openai

        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ExternalServiceError("OPENAI_API_KEY is not set", code="OCR_NOT_CONFIGURED")

        if image_url.startswith('data:application/pdf') or image_url.lower().split('?')[0].endswith('.pdf'):
            raise ExternalServiceError("PDF prescriptions are not supported by the openai OCR provider",
                                       code="OCR_UNSUPPORTED_FORMAT")

        model = os.getenv("OPENAI_MODEL", self.DEFAULT_MODEL)
        client = openai.OpenAI(api_key=api_key)

        try:
            response = client.chat.completions.create(
                model=model,
                max_tokens=2000,
                messages=[
                    {"role": "system", "content": OCR_SYSTEM_PROMPT},
                    {"role": "user", "content": [
                        {"type": "text", "text": OCR_USER_PROMPT},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ]},
                ],
            )
        except openai.OpenAIError as exc:
            logger.warning("[OCR] OpenAI request failed: %s", exc)
            raise ExternalServiceError(f"OCR provider error: {exc}")

        return self.parse_response(response.choices[0].message.content)
