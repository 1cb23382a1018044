"""
BaseOCRService — 所有 OCR 实现的抽象基类。

每个新 OCR 供应商只需：
1. 继承 BaseOCRService
2. 实现 extract()
3. 在 factory.py 的 _build_registry 注册一行

pipeline.py / tasks.py 完全不知道背后用哪家服务。
"""

import json
import math
import re
from abc import ABC, abstractmethod

from ..exceptions import ExternalServiceError
from .types import OCRResult

# 模型没给置信度时的默认值
DEFAULT_CONFIDENCE = 0.85

OCR_SYSTEM_PROMPT = "You are a pharmacy assistant that transcribes handwritten and printed prescriptions."

OCR_USER_PROMPT = """Transcribe all text on this prescription exactly as written.

Respond with JSON only, in this shape:
{"text": "<full transcription, keep line breaks>", "confidence": <number between 0 and 1>}

confidence is your estimate of how legible the prescription was.
If no text is readable, respond with {"text": "", "confidence": 0}."""

_JSON_BLOCK_RE = re.compile(r'\{.*\}', re.DOTALL)


class BaseOCRService(ABC):

    provider = ""

    @abstractmethod
    def extract(self, image_url: str) -> OCRResult:
        """
        调用 OCR 服务，返回标准 OCRResult。

        Args:
            image_url: http(s) 链接或 data URI

        Raises:
            ExternalServiceError: 服务不可用或没识别出文字，由 tasks.py 的重试机制处理
        """

    def parse_response(self, raw: str) -> OCRResult:
        """把模型返回的 JSON（可能包在 ```json 里）转成 OCRResult。"""
        match = _JSON_BLOCK_RE.search(raw or '')
        text, confidence = (raw or '').strip(), DEFAULT_CONFIDENCE
        if match:
            try:
                payload = json.loads(match.group(0))
            except json.JSONDecodeError:
                payload = None
            if isinstance(payload, dict):
                text = payload.get('text') or ''
                if not isinstance(text, str):
                    raise ExternalServiceError(
                        f'OCR provider returned a non-text transcription ({type(text).__name__})',
                        code='OCR_BAD_RESPONSE',
                    )
                text = text.strip()
                confidence = payload.get('confidence', DEFAULT_CONFIDENCE)

        if not text:
            raise ExternalServiceError('No text detected in the image', code='OCR_NO_TEXT')

        try:
            confidence = float(confidence)
        except (TypeError, ValueError):
            confidence = DEFAULT_CONFIDENCE
        if not math.isfinite(confidence):
            # json.loads 接受 NaN / Infinity
            confidence = DEFAULT_CONFIDENCE
        confidence = round(min(max(confidence, 0.0), 1.0), 2)

        return OCRResult(text=text, confidence=confidence, provider=self.provider)
