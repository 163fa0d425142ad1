from .auth_service import AuthService, SessionIdentity
from .access_gate import AccessGate
from .price_service import PriceService
from .export_service import ExportService

__all__ = [
    "AuthService",
    "SessionIdentity",
    "AccessGate",
    "PriceService",
    "ExportService",
]
