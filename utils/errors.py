# =============================================================================
# ⚠️ utils/errors.py
# Fehler bei der Smart-QR-Konfiguration
# =============================================================================

from __future__ import annotations


class SmartQRConfigError(ValueError):
    """Ungültige Smart-QR-Konfiguration (wird beim Anlegen geprüft, nie beim Scan)."""
