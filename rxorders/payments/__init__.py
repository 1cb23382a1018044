from .factory import get_gateway
from .orchestrator import PaymentOrchestrator

__all__ = ['get_gateway', 'PaymentOrchestrator']
