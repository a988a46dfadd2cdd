# =============================================================================
# 🎯 models/qr_conversion.py
# -----------------------------------------------------------------------------
# Conversion-Ereignisse nach einem Smart-QR-Scan. event_type muss in den
# conversionGoals der Konfiguration stehen (sofern dort welche gepflegt sind).
# =============================================================================

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class QRConversion(Base):
    __tablename__ = "qr_conversions"
    __table_args__ = (
        Index("ix_qr_conversions_config_event", "config_id", "event_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    qr_id: Mapped[int] = mapped_column(ForeignKey("qr_codes.id", ondelete="CASCADE"), index=True)
    slug: Mapped[str] = mapped_column(String(50), index=True)

    # Zuordnung zur Smart-Konfiguration und zur Regel, die den Scan geroutet hat
    config_id: Mapped[Optional[str]] = mapped_column(String(64))
    rule_id: Mapped[Optional[str]] = mapped_column(String(64))

    event_type: Mapped[str] = mapped_column(String(40), default="conversion")
    value: Mapped[Optional[float]] = mapped_column(Float)
    currency: Mapped[Optional[str]] = mapped_column(String(10))

    device: Mapped[Optional[str]] = mapped_column(String(20))
    ip_address: Mapped[Optional[str]] = mapped_column(String(64))
    user_agent: Mapped[Optional[str]] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<QRConversion(slug='{self.slug}', event='{self.event_type}', rule='{self.rule_id}')>"
