from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.qr_scan import QRScan
from utils.scan_context import ScanContext

logger = logging.getLogger(__name__)


class SqlScanLog:
    """Scan-Zähler über die qr_scans-Tabelle (nur lesend für die Zugriffsprüfung)."""

    def __init__(self, db: Session):
        self.db = db

    def _count(self, *criteria: Any) -> int:
        return int(
            self.db.query(func.count(QRScan.id)).filter(*criteria).scalar() or 0
        )

    def count_total(self, qr_id: int) -> int:
        return self._count(QRScan.qr_id == qr_id)

    def count_since(self, qr_id: int, since: datetime) -> int:
        return self._count(QRScan.qr_id == qr_id, QRScan.timestamp >= since)

    def count_for_identifier(self, qr_id: int, identifier: str) -> int:
        return self._count(QRScan.qr_id == qr_id, QRScan.ip_address == identifier)


def record_scan(
    db: Session,
    qr_id: int,
    ip_address: Optional[str],
    context: Optional[ScanContext],
    user_agent: Optional[str] = None,
    referrer: Optional[str] = None,
    rule_id: Optional[str] = None,
    destination: Optional[str] = None,
) -> Optional[QRScan]:
    """Speichert einen Scan; DB-Fehler werden zurückgerollt und nur geloggt."""
    scan = QRScan(
        qr_id=qr_id,
        ip_address=(ip_address or None) and ip_address[:64],
        device=context.device.type if context else None,
        user_agent=(user_agent or "")[:255] or None,
        referrer=(referrer or "")[:512] or None,
        country=context.location.country[:100] if context else None,
        city=context.location.city[:100] if context else None,
        rule_id=rule_id,
        destination=(destination or "")[:2048] or None,
        timestamp=datetime.now(timezone.utc),
    )
    try:
        db.add(scan)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(f"❌ Scan für QR {qr_id} konnte nicht gespeichert werden: {exc}")
        return None
    return scan
