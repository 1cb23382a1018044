"""
业务层认识的标准结构。

MedicationDetails 在订单上是显式 Optional：OCR / 患者 / 药剂师都还没提供时就是 None，
"Not extracted" 之类的展示默认值是前端的事，核心不做。
"""

from dataclasses import asdict, dataclass
from typing import Optional


@dataclass
class MedicationDetails:
    name: str
    dosage: str
    quantity: int          # 正整数

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PartialMedicationDetails:
    """OCR 字段抽取的结果，每个字段都可能缺失。缺失不是错误。"""

    name: Optional[str] = None
    dosage: Optional[str] = None
    quantity: Optional[int] = None

    def is_empty(self) -> bool:
        return self.name is None and self.dosage is None and self.quantity is None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class OCRStatusView:
    """PollStatus 的返回值。"""

    status: str
    extracted_text: Optional[str] = None
    confidence: Optional[float] = None
    error: Optional[str] = None
    processed_at: Optional[str] = None   # ISO 8601

    def to_dict(self) -> dict:
        """camelCase，和其他接口一致；没有值的字段不输出。"""
        body = {
            'status': self.status,
            'extractedText': self.extracted_text,
            'confidence': self.confidence,
            'error': self.error,
            'processedAt': self.processed_at,
        }
        return {k: v for k, v in body.items() if v is not None}
