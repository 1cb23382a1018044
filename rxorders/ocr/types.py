"""
OCR 层的标准响应结构。

所有 OCRService 实现的 extract() 都返回这个对象。
业务层（pipeline.py）只认识这个格式，不知道背后用的是哪家模型。
"""

from dataclasses import dataclass


@dataclass
class OCRResult:
    text: str            # 抽取出的完整处方文本
    confidence: float    # 0..1，只做提示用，不拿来自动拒绝
    provider: str        # 写入 OCRJob.provider
