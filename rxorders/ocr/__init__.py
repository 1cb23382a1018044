from .factory import get_ocr_service
from .pipeline import OCRPipeline, validate_image_reference

__all__ = ['get_ocr_service', 'OCRPipeline', 'validate_image_reference']
