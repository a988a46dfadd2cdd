# =============================================================================
# 📦 QRCode Model – dynamischer QR-Code mit Smart-Routing & Zugriffsschutz
# =============================================================================

from __future__ import annotations

import uuid
from typing import Any, Dict, Optional, TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, String, Text, event, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base

if TYPE_CHECKING:
    from models.qr_scan import QRScan


class QRCode(Base):
    """
    Dynamischer QR-Code.

    🔐 Smart-Konfiguration (MultiURLConfig) und Schutz-Einstellungen liegen
    gemeinsam verschlüsselt in 'encrypted_content':
        {"smart": {...}, "protection": {...}}
    """
    __tablename__ = "qr_codes"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    slug: Mapped[str] = mapped_column(
        String(50),
        unique=True,
        nullable=False,
        index=True,
        default=lambda: uuid.uuid4().hex[:10],
    )

    # Ziel für QR-Codes ohne Smart-Konfiguration
    target_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)

    # id der MultiURLConfig (für /smart-content/<config_id>/<rule_id>)
    smart_config_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    encrypted_content: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Verschlüsselte Smart-/Schutz-Konfiguration (AES-256-GCM)",
    )

    active: Mapped[bool] = mapped_column(Boolean, default=True)

    scans: Mapped[list["QRScan"]] = relationship(
        "QRScan",
        back_populates="qr",
        cascade="all, delete-orphan",
        lazy="select",
    )

    created_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[Optional[DateTime]] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    # ---------------------------------------------------------------------
    # 🔐 Verschlüsselte Daten
    # ---------------------------------------------------------------------
    def get_data(self) -> Dict[str, Any]:
        cached = self.__dict__.get("_decrypted_data")
        if cached is not None:
            return cached
        data: Dict[str, Any] = {}
        if self.encrypted_content:
            from utils.encryption import decrypt_config
            data = decrypt_config(self.encrypted_content) or {}
        self.__dict__["_decrypted_data"] = data
        return data

    def set_data(self, data: Dict[str, Any]) -> None:
        from utils.encryption import encrypt_config
        self.encrypted_content = encrypt_config(data) or None
        self.__dict__["_decrypted_data"] = dict(data)

    def get_smart_config(self) -> Optional[Dict[str, Any]]:
        smart = self.get_data().get("smart")
        return smart if isinstance(smart, dict) else None

    def get_protection(self) -> Optional[Dict[str, Any]]:
        protection = self.get_data().get("protection")
        return protection if isinstance(protection, dict) else None

    def set_smart_config(
        self,
        smart: Optional[Dict[str, Any]],
        protection: Optional[Dict[str, Any]] = None,
    ) -> None:
        data: Dict[str, Any] = {}
        if smart:
            # feste id, sonst zeigt /smart-content/<config_id>/… ins Leere
            if not smart.get("id"):
                smart = {**smart, "id": uuid.uuid4().hex}
            data["smart"] = smart
        if protection:
            data["protection"] = protection
        self.smart_config_id = str(smart["id"]) if smart else None
        self.set_data(data)

    def __repr__(self) -> str:
        return f"<QRCode(id={self.id}, slug='{self.slug}', active={self.active})>"


@event.listens_for(QRCode, "before_insert")
def set_unique_slug(mapper, connection, target: QRCode) -> None:
    """Garantiert, dass jeder QR-Code einen Slug erhält."""
    if not getattr(target, "slug", None):
        target.slug = uuid.uuid4().hex[:10]
