from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
import pytest

from database import build_database_url, ensure_tables
from models.qrcode import QRCode
from models.qr_scan import QRScan
from utils.scan_log import SqlScanLog, record_scan


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    engine.dispose()


def test_database_connection(engine):
    """Überprüft, ob eine Verbindung zur Datenbank besteht."""
    try:
        with engine.connect() as conn:
            result = conn.execute(text("SELECT 1"))
            assert result.scalar() == 1
    except OperationalError as e:
        pytest.fail(f"❌ Datenbankverbindung fehlgeschlagen: {e}")


def test_required_tables_exist(engine):
    """Prüft, ob ensure_tables alle benötigten Tabellen anlegt."""
    ensure_tables(bind=engine)

    tables = inspect(engine).get_table_names()
    required = ["qr_codes", "qr_scans", "qr_conversions"]
    missing = [t for t in required if t not in tables]
    assert not missing, f"❌ Fehlende Tabellen: {missing}"


def test_database_url_prefers_explicit_setting(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///./other.db")
    assert build_database_url() == "sqlite:///./other.db"

    monkeypatch.delenv("DATABASE_URL")
    assert build_database_url().startswith("mysql+pymysql://")


def test_encrypted_config_round_trip(engine):
    ensure_tables(bind=engine)
    session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    with session_local() as db:
        qr = QRCode(slug="enc1", title="Verschlüsselt")
        qr.set_smart_config({"defaultUrl": "https://example.com", "rules": []}, {"usageLimits": {"enabled": True}})
        db.add(qr)
        db.commit()
        config_id = qr.smart_config_id

    with session_local() as db:
        stored = db.query(QRCode).filter(QRCode.slug == "enc1").one()
        assert "example.com" not in stored.encrypted_content
        assert stored.get_smart_config()["defaultUrl"] == "https://example.com"
        assert stored.get_smart_config()["id"] == config_id
        assert stored.get_protection() == {"usageLimits": {"enabled": True}}


def test_scan_log_counts(engine, make_context):
    ensure_tables(bind=engine)
    session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    with session_local() as db:
        qr = QRCode(slug="cnt1", target_url="https://example.com")
        db.add(qr)
        db.commit()

        ctx = make_context(device_type="mobile")
        record_scan(db, qr.id, "203.0.113.1", ctx, rule_id="mobile", destination="https://m.example.com")
        record_scan(db, qr.id, "203.0.113.1", ctx)
        record_scan(db, qr.id, "203.0.113.2", None)

        log = SqlScanLog(db)
        assert log.count_total(qr.id) == 3
        assert log.count_for_identifier(qr.id, "203.0.113.1") == 2
        assert log.count_for_identifier(qr.id, "198.51.100.9") == 0

        first = db.query(QRScan).order_by(QRScan.id).first()
        assert first.device == "mobile"
        assert first.country == "Germany"
        assert first.rule_id == "mobile"
