# =============================================================================
# 📊 models/qr_scan.py
# -----------------------------------------------------------------------------
# Ein Datensatz pro erlaubtem Scan. Grundlage für die Nutzungslimits
# (gesamt / heute / pro IP).
# =============================================================================

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from database import Base


def utc_now():
    """Aktuelle UTC-Zeit (timezone-aware)."""
    return datetime.now(timezone.utc)


class QRScan(Base):
    __tablename__ = "qr_scans"
    __table_args__ = (
        Index("ix_qr_scans_qr_ip", "qr_id", "ip_address"),
        Index("ix_qr_scans_qr_time", "qr_id", "timestamp"),
        {
            "mysql_engine": "InnoDB",
            "mysql_charset": "utf8mb4",
            "mysql_collate": "utf8mb4_unicode_ci",
        },
    )

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    qr_id = Column(Integer, ForeignKey("qr_codes.id", ondelete="CASCADE"), nullable=False, index=True)

    ip_address = Column(String(64), nullable=True)     # dient als Nutzerkennung
    device = Column(String(20), nullable=True)         # mobile / tablet / desktop
    user_agent = Column(String(255), nullable=True)
    referrer = Column(String(512), nullable=True)
    country = Column(String(100), nullable=True)
    city = Column(String(100), nullable=True)

    rule_id = Column(String(64), nullable=True)        # getroffene Smart-Regel
    destination = Column(String(2048), nullable=True)

    timestamp = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    qr = relationship("QRCode", back_populates="scans")

    def __repr__(self):
        return (
            f"<QRScan(id={self.id}, qr_id={self.qr_id}, device='{self.device}', "
            f"country='{self.country}', timestamp={self.timestamp})>"
        )
