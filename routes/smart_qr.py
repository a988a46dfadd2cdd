# =============================================================================
# 🛠️ Smart-QR-Konfiguration
# -----------------------------------------------------------------------------
#       GET  /api/smart-qr/templates   → Regel-Vorlagen
#       POST /api/smart-qr/ab-test     → A/B-Regel erzeugen
#       POST /api/smart-qr/validate    → Konfiguration streng prüfen
#       POST /api/smart-qr/password    → Passwort-Block (nur Hash)
# =============================================================================

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from utils.errors import SmartQRConfigError
from utils.qr_protection import build_password_protection
from utils.smart_qr import AB_TEST_PRIORITY, common_rule_templates, create_ab_test_rule
from utils.smart_rules import config_from_dict, config_to_dict, rule_to_dict

router = APIRouter(prefix="/api/smart-qr", tags=["Smart QR"])


class ABTestIn(BaseModel):
    name: str = Field(default="A/B Test")
    variants: list[str] = Field(..., description="Variant URLs")
    traffic: list[float] = Field(..., description="Traffic share per variant in percent")
    priority: int = Field(default=AB_TEST_PRIORITY)


class PasswordIn(BaseModel):
    password: str = Field(..., min_length=1)
    hint: Optional[str] = None


@router.get("/templates")
def rule_templates() -> list[dict[str, Any]]:
    return common_rule_templates()


@router.post("/ab-test")
def build_ab_test_rule(body: ABTestIn) -> dict[str, Any]:
    try:
        rule = create_ab_test_rule(body.name, body.variants, body.traffic, priority=body.priority)
    except SmartQRConfigError as exc:
        raise HTTPException(422, str(exc))
    return rule_to_dict(rule)


@router.post("/validate")
def validate_config(payload: dict[str, Any]) -> dict[str, Any]:
    """Prüft eine MultiURLConfig streng und gibt sie normalisiert zurück."""
    try:
        config = config_from_dict(payload, strict=True)
    except SmartQRConfigError as exc:
        raise HTTPException(422, str(exc))
    return config_to_dict(config)


@router.post("/password")
def build_password_gate(body: PasswordIn) -> dict[str, Any]:
    """Erzeugt den 'password'-Block der Schutz-Einstellungen (nur Hash wird gespeichert)."""
    gate = build_password_protection(body.password, body.hint)
    return {
        "enabled": gate.enabled,
        "passwordHash": gate.password_hash,
        "hint": gate.hint,
    }
