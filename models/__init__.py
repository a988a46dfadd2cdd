# =============================================================================
# 📦 models/__init__.py
# =============================================================================

from .qrcode import QRCode
from .qr_scan import QRScan
from .qr_conversion import QRConversion

__all__ = [
    "QRCode",
    "QRScan",
    "QRConversion",
]
