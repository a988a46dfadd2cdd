# =============================================================================
# 🚀 Smart QR Resolver – Hauptapplikation (main.py)
# =============================================================================

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict

from dotenv import load_dotenv
from fastapi import FastAPI

# -------------------------------------------------------------------------
# 1️⃣ .env laden (muss vor allen Modul-Importen passieren, die os.getenv lesen)
# -------------------------------------------------------------------------
env_path = Path(__file__).resolve().parent / ".env"
load_dotenv(dotenv_path=env_path)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

from database import ensure_tables  # noqa: E402
from routes import qr_resolve, smart_qr  # noqa: E402

# -------------------------------------------------------------------------
# 2️⃣ FastAPI App
# -------------------------------------------------------------------------
app = FastAPI(title="Smart QR Resolver", version="1.0")

if os.getenv("AUTO_CREATE_TABLES", "1") in {"1", "true", "yes"}:
    ensure_tables()

# -------------------------------------------------------------------------
# 3️⃣ Routen
# -------------------------------------------------------------------------
app.include_router(qr_resolve.router)
app.include_router(smart_qr.router)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}
