# =============================================================================
# 🗄️ database.py
# -----------------------------------------------------------------------------
# SQLAlchemy-Datenbankkonfiguration für den Smart-QR-Resolver
# DATABASE_URL hat Vorrang, sonst MySQL aus den MYSQL_*-Variablen.
# =============================================================================

import os
from urllib.parse import quote_plus

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

# 🔹 .env laden (z. B. aus .env-Datei im Projektverzeichnis)
load_dotenv()

# 🔹 MySQL-Parameter aus Umgebungsvariablen
MYSQL_USER = os.getenv("MYSQL_USER", "root")
MYSQL_PASS = os.getenv("MYSQL_PASS", "")
MYSQL_HOST = os.getenv("MYSQL_HOST", "localhost")
MYSQL_PORT = os.getenv("MYSQL_PORT", "3306")
MYSQL_DB = os.getenv("MYSQL_DB", "smart_qr")


def build_database_url() -> str:
    explicit = os.getenv("DATABASE_URL")
    if explicit:
        return explicit
    # Passwort sicher escapen (bei Sonderzeichen wie @, #, !, %)
    encoded_pass = quote_plus(MYSQL_PASS)
    return (
        f"mysql+pymysql://{MYSQL_USER}:{encoded_pass}@{MYSQL_HOST}:{MYSQL_PORT}/{MYSQL_DB}"
        "?charset=utf8mb4"
    )


SQLALCHEMY_DATABASE_URL = build_database_url()

if SQLALCHEMY_DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    # pool_pre_ping = erkennt unterbrochene Verbindungen, pool_recycle hält MySQL frisch
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        pool_pre_ping=True,
        pool_recycle=280,
    )

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()


def get_db():
    """
    Erstellt eine neue Datenbank-Session pro Anfrage und schließt sie automatisch.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def ensure_tables(bind=None) -> None:
    """Legt fehlende Tabellen an; Fehler werden nur protokolliert."""
    import logging

    import models  # noqa: F401  (registriert alle Modelle an Base)

    try:
        Base.metadata.create_all(bind=bind or engine)
    except Exception as exc:
        logging.getLogger(__name__).warning(f"⚠️ Tabellen konnten nicht angelegt werden: {exc}")
